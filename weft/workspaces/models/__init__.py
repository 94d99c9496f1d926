"""Data models for the workspace core."""

from weft.workspaces.models.assignment import (
    AssignmentSnapshot,
    ClaimResult,
    OutcomeMessages,
    ReleaseResult,
)
from weft.workspaces.models.enums import CloneMethod, LockType, PlanStatus, VcsKind
from weft.workspaces.models.lock import LockInfo
from weft.workspaces.models.plan import Plan
from weft.workspaces.models.workspace import WorkspaceInfo, WorkspaceMetadataPatch

__all__ = [
    # Assignments
    "AssignmentSnapshot",
    "ClaimResult",
    # Enums
    "CloneMethod",
    # Lock
    "LockInfo",
    "LockType",
    "OutcomeMessages",
    # Plans
    "Plan",
    "PlanStatus",
    "ReleaseResult",
    "VcsKind",
    # Workspaces
    "WorkspaceInfo",
    "WorkspaceMetadataPatch",
]
