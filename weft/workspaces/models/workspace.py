"""Workspace data models.

A workspace is one isolated working copy of a repository.  Rows live in the
metadata database; live lock state is read from the directory itself.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from weft.workspaces.models.lock import LockInfo


class WorkspaceInfo(BaseModel):
    """Workspace row joined with its project and issue URLs."""

    model_config = ConfigDict(from_attributes=True)

    workspace_id: int
    path: str
    task_id: str
    repository_id: str | None = None
    branch: str | None = None
    name: str | None = None
    description: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None
    issue_urls: list[str] = Field(default_factory=list)
    is_primary: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    locked_by: LockInfo | None = None


class WorkspaceMetadataPatch(BaseModel):
    """Partial update of a workspace row.  Only fields that are set are applied.

    An empty string clears a text field.
    """

    name: str | None = None
    description: str | None = None
    branch: str | None = None
    plan_id: str | None = None
    plan_title: str | None = None
    issue_urls: list[str] | None = None
    is_primary: bool | None = None
