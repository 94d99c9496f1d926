"""Results of plan claim / release operations."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class AssignmentSnapshot:
    """Ownership of a plan at one point in time."""

    workspace_path: str | None = None
    user: str | None = None


@dataclass
class ClaimResult:
    plan_uuid: str
    plan_id: int | None
    workspace_path: str
    user: str | None
    previous: AssignmentSnapshot | None = None
    created: bool = False
    updated_workspace: bool = False
    updated_user: bool = False

    @property
    def changed(self) -> bool:
        return self.created or self.updated_workspace or self.updated_user


@dataclass
class ReleaseResult:
    plan_uuid: str
    plan_id: int | None
    workspace_path: str
    user: str | None
    existed: bool = False
    matched_workspace: bool = False
    removed_assignment: bool = False
    cleared_workspace: bool = False
    cleared_user: bool = False
    remaining_user: str | None = None
    claimed_workspace_path: str | None = None


@dataclass
class OutcomeMessages:
    """User-facing lines produced by a claim or release."""

    info: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
