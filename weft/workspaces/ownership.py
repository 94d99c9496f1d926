"""Plan ownership: which workspace and which user have claimed a plan.

An assignment has two independent fields, ``workspace_id`` and
``claimed_by_user``.  Claiming moves either field to the caller and warns
about the previous owner; it never fails because someone else held the
plan.  Releasing only acts when the plan is claimed in the calling
workspace, clears the user field only for the calling user, and deletes
the row once both fields are empty.

The ``describe_*`` functions turn results into the exact lines shown to
users; the ``log_*`` functions emit them.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from sqlalchemy.orm import Session

from weft.workspaces.managers import assignments as assignment_manager
from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.managers.projects import get_or_create_project, get_project
from weft.workspaces.models.assignment import (
    AssignmentSnapshot,
    ClaimResult,
    OutcomeMessages,
    ReleaseResult,
)
from weft.workspaces.models.enums import PlanStatus
from weft.workspaces.models.plan import Plan
from weft.workspaces.plans import PlanFileError, read_plan, set_plan_status


def _require_uuid(plan: Plan) -> str:
    if not plan.uuid:
        msg = f"Plan {plan.label} has no uuid; cannot record an assignment"
        raise PlanFileError(msg)
    return plan.uuid


# -- Claim ---------------------------------------------------------------------


def claim_plan(
    db: Session,
    plan: Plan,
    workspace_path: str | Path,
    *,
    repository_id: str,
    user: str | None,
    remote_url: str | None = None,
) -> ClaimResult:
    """Claim *plan* for *workspace_path* and *user*.

    An unknown workspace is recorded first.  ``user=None`` means the user
    identity is unavailable and the user field is left alone.
    """
    plan_uuid = _require_uuid(plan)
    key = workspace_manager.normalize_path(workspace_path)

    workspace = workspace_manager.get_workspace_by_path(db, key)
    if workspace is None:
        logger.debug("Registering workspace {} before claiming", key)
        workspace = workspace_manager.record_workspace(
            db,
            path=key,
            task_id=Path(key).name,
            repository_id=repository_id,
            remote_url=remote_url,
        )
    project = get_or_create_project(db, repository_id, remote_url=remote_url)

    result = ClaimResult(plan_uuid=plan_uuid, plan_id=plan.id, workspace_path=key, user=user)
    assignment = assignment_manager.get_assignment(db, project.id, plan_uuid)

    if assignment is None:
        assignment_manager.create_assignment(
            db,
            project_id=project.id,
            plan_uuid=plan_uuid,
            plan_id=plan.id,
            workspace_id=workspace.id,
            user=user,
        )
        result.created = True
        result.updated_user = user is not None
        return result

    result.previous = AssignmentSnapshot(
        workspace_path=assignment.workspace.path if assignment.workspace is not None else None,
        user=assignment.claimed_by_user,
    )
    result.updated_workspace = assignment.workspace_id != workspace.id
    result.updated_user = user is not None and assignment.claimed_by_user != user
    if not result.changed:
        return result

    changes: dict[str, object] = {"plan_id": plan.id}
    if result.updated_workspace:
        changes["workspace_id"] = workspace.id
    if result.updated_user:
        changes["claimed_by_user"] = user
    assignment_manager.update_assignment(db, assignment, **changes)
    return result


def describe_claim_outcome(result: ClaimResult, label: str) -> OutcomeMessages:
    messages = OutcomeMessages()
    if not result.changed:
        return messages

    previous = result.previous
    if previous is not None:
        if result.updated_workspace and previous.workspace_path:
            by_user = f" by user {previous.user}" if previous.user else ""
            messages.warnings.append(
                f"⚠ Plan {label} was previously claimed in workspace {previous.workspace_path}{by_user}; "
                f"reassigning to workspace {result.workspace_path}"
            )
        if result.updated_user and previous.user:
            messages.warnings.append(
                f"⚠ Plan {label} was previously claimed by user {previous.user}; reassigning to {result.user}"
            )

    parts: list[str] = []
    if result.created:
        parts.append("created assignment")
    elif result.updated_workspace:
        parts.append("added workspace")
    if result.updated_user:
        parts.append(f"added user {result.user}")
    messages.info.append(f"✓ Claimed plan {label} in workspace {result.workspace_path} ({', '.join(parts)})")
    return messages


# -- Release -------------------------------------------------------------------


def release_plan(
    db: Session,
    plan: Plan,
    workspace_path: str | Path,
    *,
    repository_id: str,
    user: str | None,
) -> ReleaseResult:
    """Release *plan* from *workspace_path*.

    Nothing changes unless the plan is claimed in that workspace.
    """
    plan_uuid = _require_uuid(plan)
    key = workspace_manager.normalize_path(workspace_path)
    result = ReleaseResult(plan_uuid=plan_uuid, plan_id=plan.id, workspace_path=key, user=user)

    project = get_project(db, repository_id)
    assignment = assignment_manager.get_assignment(db, project.id, plan_uuid) if project is not None else None
    if assignment is None:
        return result
    result.existed = True
    result.claimed_workspace_path = assignment.workspace.path if assignment.workspace is not None else None

    workspace = workspace_manager.get_workspace_by_path(db, key)
    if workspace is None or assignment.workspace_id != workspace.id:
        return result
    result.matched_workspace = True
    result.cleared_workspace = True

    remaining_user = assignment.claimed_by_user
    if user is not None and remaining_user == user:
        result.cleared_user = True
        remaining_user = None
    result.remaining_user = remaining_user

    if remaining_user is None:
        assignment_manager.delete_assignment(db, assignment)
        result.removed_assignment = True
    else:
        assignment_manager.update_assignment(db, assignment, workspace_id=None)
    return result


def describe_release_outcome(result: ReleaseResult, label: str) -> OutcomeMessages:
    messages = OutcomeMessages()
    if not result.existed:
        messages.info.append(f"• Plan {label} has no assignments to release")
        return messages
    if not result.matched_workspace:
        messages.info.append(f"• Plan {label} is not claimed in workspace {result.workspace_path}")
        return messages

    parts = ["removed workspace"]
    if result.cleared_user:
        parts.append(f"removed user {result.user}")
    detail = ", ".join(parts)
    if result.removed_assignment:
        messages.info.append(f"✓ Released plan {label} from workspace {result.workspace_path} ({detail})")
    else:
        messages.info.append(f"✓ Updated assignment for plan {label} in workspace {result.workspace_path} ({detail})")
        if result.remaining_user:
            messages.warnings.append(f"⚠ Plan remains claimed by other users: {result.remaining_user}")
    return messages


def reset_plan_status(path: str | Path) -> str:
    """Set the plan at *path* back to pending.  Returns the line to show."""
    plan = read_plan(path)
    if plan.id is None:
        return f"• Plan {plan.label} has no numeric id; status left unchanged"
    if plan.status == PlanStatus.PENDING:
        return f"• Plan {plan.label} is already pending"
    set_plan_status(path, PlanStatus.PENDING)
    return f"✓ Reset status for plan {plan.label} to pending"


# -- Logging -------------------------------------------------------------------


def log_outcome(messages: OutcomeMessages) -> None:
    for line in messages.warnings:
        logger.warning(line)
    for line in messages.info:
        logger.info(line)


def log_claim_outcome(result: ClaimResult, label: str) -> None:
    log_outcome(describe_claim_outcome(result, label))


def log_release_outcome(result: ReleaseResult, label: str) -> None:
    log_outcome(describe_release_outcome(result, label))
