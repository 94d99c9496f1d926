"""Workspace coordination core: locks, lifecycle, sync and plan ownership."""
