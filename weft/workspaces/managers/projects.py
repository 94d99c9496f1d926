"""Project lookups.

A project groups every workspace and assignment that belongs to one
repository identity.  Projects are created on first reference and never
deleted here.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from weft.workspaces.db.tables import Project


def get_project(db: Session, repository_id: str) -> Project | None:
    return db.scalars(select(Project).where(Project.repository_id == repository_id)).first()


def get_or_create_project(
    db: Session,
    repository_id: str,
    *,
    remote_url: str | None = None,
    last_git_root: str | None = None,
) -> Project:
    """Return the project for *repository_id*, creating it when missing.

    Known remote URL and git root are refreshed when provided.
    """
    project = get_project(db, repository_id)
    if project is None:
        project = Project(repository_id=repository_id, remote_url=remote_url, last_git_root=last_git_root)
        db.add(project)
        db.commit()
        db.refresh(project)
        return project

    changed = False
    if remote_url and project.remote_url != remote_url:
        project.remote_url = remote_url
        changed = True
    if last_git_root and project.last_git_root != last_git_root:
        project.last_git_root = last_git_root
        changed = True
    if changed:
        db.commit()
    return project
