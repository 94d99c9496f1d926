"""Shared enumerations used across the workspace core."""

from __future__ import annotations

from enum import StrEnum

# -- Lock --------------------------------------------------------------------


class LockType(StrEnum):
    """How a workspace lock is released.

    ``pid`` locks belong to a running process and are reclaimed once it
    exits.  ``persistent`` locks stay until an explicit unlock.
    """

    PID = "pid"
    PERSISTENT = "persistent"


# -- VCS ---------------------------------------------------------------------


class VcsKind(StrEnum):
    GIT = "git"
    JJ = "jj"


# -- Workspace creation ------------------------------------------------------


class CloneMethod(StrEnum):
    GIT = "git"
    CP = "cp"


# -- Plans -------------------------------------------------------------------


class PlanStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"
