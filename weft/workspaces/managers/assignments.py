"""Assignment CRUD operations.

An assignment records which workspace and which user own a plan.  Rows are
keyed by ``(project_id, plan_uuid)``.  Transition rules live in
``weft.workspaces.ownership``; this module only reads and writes rows.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import ColumnElement, delete, select
from sqlalchemy.orm import Session

from weft.workspaces.db.tables import Assignment, utcnow


def get_assignment(db: Session, project_id: int, plan_uuid: str) -> Assignment | None:
    stmt = select(Assignment).where(Assignment.project_id == project_id, Assignment.plan_uuid == plan_uuid)
    return db.scalars(stmt).first()


def list_assignments(db: Session, *, project_id: int | None = None) -> list[Assignment]:
    stmt = select(Assignment).order_by(Assignment.plan_id, Assignment.plan_uuid)
    if project_id is not None:
        stmt = stmt.where(Assignment.project_id == project_id)
    return list(db.scalars(stmt).unique().all())


def create_assignment(
    db: Session,
    *,
    project_id: int,
    plan_uuid: str,
    plan_id: int | None,
    workspace_id: int | None,
    user: str | None,
) -> Assignment:
    assignment = Assignment(
        project_id=project_id,
        plan_uuid=plan_uuid,
        plan_id=plan_id,
        workspace_id=workspace_id,
        claimed_by_user=user,
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    return assignment


def update_assignment(db: Session, assignment: Assignment, **changes: object) -> Assignment:
    """Apply *changes* to the row and bump ``updated_at``."""
    for key, value in changes.items():
        setattr(assignment, key, value)
    assignment.updated_at = utcnow()
    db.commit()
    db.refresh(assignment)
    return assignment


def delete_assignment(db: Session, assignment: Assignment) -> None:
    db.delete(assignment)
    db.commit()


def _stale_criteria(older_than_days: int, project_id: int | None) -> list[ColumnElement[bool]]:
    if older_than_days < 0:
        msg = f"older_than_days must be non-negative, got {older_than_days}"
        raise ValueError(msg)

    criteria = [Assignment.updated_at < utcnow() - timedelta(days=older_than_days)]
    if project_id is not None:
        criteria.append(Assignment.project_id == project_id)
    return criteria


def list_stale_assignments(db: Session, *, older_than_days: int, project_id: int | None = None) -> list[Assignment]:
    stmt = (
        select(Assignment)
        .where(*_stale_criteria(older_than_days, project_id))
        .order_by(Assignment.updated_at, Assignment.plan_uuid)
    )
    return list(db.scalars(stmt).unique().all())


def clean_stale_assignments(db: Session, *, older_than_days: int, project_id: int | None = None) -> int:
    """Delete assignments not updated for *older_than_days*.  Returns the count removed."""
    stmt = delete(Assignment).where(*_stale_criteria(older_than_days, project_id))
    result = db.execute(stmt)
    db.commit()
    return result.rowcount
