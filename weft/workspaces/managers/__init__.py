"""Data access managers for the workspace metadata store.

Each module provides plain functions that encapsulate CRUD operations.
Managers accept a ``Session`` as a parameter, commit their own writes, and
raise domain exceptions (``LookupError``, ``ValueError``), never CLI
exceptions; that translation is the command layer's responsibility.
"""
