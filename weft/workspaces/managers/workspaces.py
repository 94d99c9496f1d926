"""Workspace CRUD operations.

Workspaces are keyed by their absolute, resolved directory path.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from weft.workspaces.db.tables import Project, Workspace, WorkspaceIssue
from weft.workspaces.managers.projects import get_or_create_project
from weft.workspaces.models.lock import LockInfo
from weft.workspaces.models.workspace import WorkspaceInfo, WorkspaceMetadataPatch


class WorkspaceNotFoundError(LookupError):
    """Raised when no workspace is recorded for a path."""


def normalize_path(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


def record_workspace(
    db: Session,
    *,
    path: str | Path,
    task_id: str,
    repository_id: str,
    remote_url: str | None = None,
    git_root: str | None = None,
    branch: str | None = None,
    name: str | None = None,
    description: str | None = None,
    plan_id: str | None = None,
    plan_title: str | None = None,
    issue_urls: list[str] | None = None,
    is_primary: bool = False,
) -> Workspace:
    """Insert or replace the workspace recorded at *path*."""
    project = get_or_create_project(db, repository_id, remote_url=remote_url, last_git_root=git_root)
    key = normalize_path(path)

    workspace = get_workspace_by_path(db, key)
    if workspace is None:
        workspace = Workspace(path=key, task_id=task_id, project_id=project.id)
        db.add(workspace)
    else:
        workspace.task_id = task_id
        workspace.project_id = project.id

    workspace.branch = branch
    workspace.name = name
    workspace.description = description
    workspace.plan_id = plan_id
    workspace.plan_title = plan_title
    if is_primary:
        _clear_primary(db, project.id, exclude_path=key)
    workspace.is_primary = is_primary
    if issue_urls is not None:
        _replace_issues(workspace, issue_urls)

    db.commit()
    db.refresh(workspace)
    logger.debug("Recorded workspace {} (task {})", key, task_id)
    return workspace


def get_workspace_by_path(db: Session, path: str | Path) -> Workspace | None:
    return db.scalars(select(Workspace).where(Workspace.path == normalize_path(path))).first()


def require_workspace(db: Session, path: str | Path) -> Workspace:
    """Get a workspace by path.  Raises ``WorkspaceNotFoundError`` if missing."""
    workspace = get_workspace_by_path(db, path)
    if workspace is None:
        raise WorkspaceNotFoundError(normalize_path(path))
    return workspace


def patch_workspace(db: Session, path: str | Path, patch: WorkspaceMetadataPatch) -> Workspace:
    """Partially update a workspace.  Raises ``WorkspaceNotFoundError`` if missing.

    Empty strings clear text fields.  Marking a workspace primary demotes any
    other primary workspace of the same project.
    """
    workspace = require_workspace(db, path)

    changes = patch.model_dump(exclude_unset=True)
    if not changes:
        return workspace

    issue_urls = changes.pop("issue_urls", None)
    if issue_urls is not None:
        _replace_issues(workspace, issue_urls)

    if changes.get("is_primary"):
        _clear_primary(db, workspace.project_id, exclude_path=workspace.path)

    for key, value in changes.items():
        if isinstance(value, str) and value == "":
            value = None
        setattr(workspace, key, value)

    db.commit()
    db.refresh(workspace)
    return workspace


def delete_workspace(db: Session, path: str | Path) -> bool:
    """Delete the workspace recorded at *path*.  Returns False if none existed."""
    workspace = get_workspace_by_path(db, path)
    if workspace is None:
        return False
    db.delete(workspace)
    db.commit()
    return True


def list_workspaces(
    db: Session,
    *,
    repository_id: str | None = None,
    task_id: str | None = None,
) -> list[Workspace]:
    """List workspaces in discovery order (oldest first), optionally filtered."""
    stmt = select(Workspace).order_by(Workspace.created_at, Workspace.id)
    if repository_id is not None:
        stmt = stmt.join(Project).where(Project.repository_id == repository_id)
    if task_id is not None:
        stmt = stmt.where(Workspace.task_id == task_id)
    return list(db.scalars(stmt).unique().all())


def find_primary_workspace(db: Session, repository_id: str) -> Workspace | None:
    stmt = (
        select(Workspace)
        .join(Project)
        .where(Project.repository_id == repository_id, Workspace.is_primary.is_(True))
        .order_by(Workspace.id)
    )
    return db.scalars(stmt).first()


def remove_missing_workspaces(db: Session, *, repository_id: str | None = None) -> list[str]:
    """Delete rows whose directories no longer exist.  Returns the removed paths."""
    removed: list[str] = []
    for workspace in list_workspaces(db, repository_id=repository_id):
        if not Path(workspace.path).is_dir():
            removed.append(workspace.path)
            db.delete(workspace)
    if removed:
        db.commit()
        for path in removed:
            logger.info("Removed missing workspace {}", path)
    return removed


def to_info(workspace: Workspace, locked_by: LockInfo | None = None) -> WorkspaceInfo:
    return WorkspaceInfo(
        workspace_id=workspace.id,
        path=workspace.path,
        task_id=workspace.task_id,
        repository_id=workspace.repository_id,
        branch=workspace.branch,
        name=workspace.name,
        description=workspace.description,
        plan_id=workspace.plan_id,
        plan_title=workspace.plan_title,
        issue_urls=workspace.issue_urls,
        is_primary=workspace.is_primary,
        created_at=workspace.created_at,
        updated_at=workspace.updated_at,
        locked_by=locked_by,
    )


# -- Helpers -------------------------------------------------------------------


def _replace_issues(workspace: Workspace, issue_urls: list[str]) -> None:
    wanted = list(dict.fromkeys(url for url in issue_urls if url))
    for issue in list(workspace.issues):
        if issue.url not in wanted:
            workspace.issues.remove(issue)
    present = {issue.url for issue in workspace.issues}
    for url in wanted:
        if url not in present:
            workspace.issues.append(WorkspaceIssue(url=url))


def _clear_primary(db: Session, project_id: int, *, exclude_path: str) -> None:
    stmt = select(Workspace).where(
        Workspace.project_id == project_id,
        Workspace.is_primary.is_(True),
        Workspace.path != exclude_path,
    )
    for other in db.scalars(stmt):
        other.is_primary = False
