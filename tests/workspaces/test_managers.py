"""Tests for the project / workspace / assignment managers."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

from weft.workspaces.db.tables import utcnow
from weft.workspaces.managers import assignments as assignment_manager
from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.managers.projects import get_or_create_project, get_project
from weft.workspaces.models.workspace import WorkspaceMetadataPatch

REPO = "github.com/acme/tasks"


def _record(db: Session, path: Path, task_id: str, **kwargs: object):  # noqa: ANN202
    path.mkdir(parents=True, exist_ok=True)
    return workspace_manager.record_workspace(db, path=path, task_id=task_id, repository_id=REPO, **kwargs)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def test_get_or_create_project_is_idempotent(db_session: Session) -> None:
    first = get_or_create_project(db_session, REPO, remote_url="git@github.com:acme/tasks.git")
    second = get_or_create_project(db_session, REPO, last_git_root="/src/tasks")

    assert first.id == second.id
    assert second.remote_url == "git@github.com:acme/tasks.git"
    assert second.last_git_root == "/src/tasks"
    assert get_project(db_session, "other") is None


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


def test_record_workspace_upserts_by_path(db_session: Session, tmp_path: Path) -> None:
    ws = _record(db_session, tmp_path / "ws", "task-1", issue_urls=["https://x/1"])
    again = _record(db_session, tmp_path / "ws" / ".." / "ws", "task-2", branch="task-2")

    assert again.id == ws.id
    assert again.task_id == "task-2"
    assert again.branch == "task-2"
    assert again.issue_urls == ["https://x/1"]
    assert again.repository_id == REPO
    assert len(workspace_manager.list_workspaces(db_session)) == 1


def test_patch_workspace(db_session: Session, tmp_path: Path) -> None:
    _record(db_session, tmp_path / "ws", "task-1", name="old", description="desc", issue_urls=["https://x/1"])

    updated = workspace_manager.patch_workspace(
        db_session,
        tmp_path / "ws",
        WorkspaceMetadataPatch(name="new", description="", issue_urls=["https://x/2", "https://x/2"]),
    )

    assert updated.name == "new"
    assert updated.description is None
    assert updated.issue_urls == ["https://x/2"]


def test_patch_missing_workspace(db_session: Session, tmp_path: Path) -> None:
    with pytest.raises(workspace_manager.WorkspaceNotFoundError):
        workspace_manager.patch_workspace(db_session, tmp_path / "nope", WorkspaceMetadataPatch(name="x"))


def test_single_primary_per_repository(db_session: Session, tmp_path: Path) -> None:
    _record(db_session, tmp_path / "a", "a", is_primary=True)
    _record(db_session, tmp_path / "b", "b")

    workspace_manager.patch_workspace(db_session, tmp_path / "b", WorkspaceMetadataPatch(is_primary=True))

    primary = workspace_manager.find_primary_workspace(db_session, REPO)
    assert primary is not None
    assert primary.path == str((tmp_path / "b").resolve())
    assert not workspace_manager.get_workspace_by_path(db_session, tmp_path / "a").is_primary


def test_list_workspaces_filters(db_session: Session, tmp_path: Path) -> None:
    _record(db_session, tmp_path / "a", "task-1")
    _record(db_session, tmp_path / "b", "task-2")
    (tmp_path / "c").mkdir()
    workspace_manager.record_workspace(db_session, path=tmp_path / "c", task_id="task-1", repository_id="elsewhere")

    assert [ws.task_id for ws in workspace_manager.list_workspaces(db_session, repository_id=REPO)] == [
        "task-1",
        "task-2",
    ]
    assert len(workspace_manager.list_workspaces(db_session, task_id="task-1")) == 2


def test_remove_missing_workspaces(db_session: Session, tmp_path: Path) -> None:
    _record(db_session, tmp_path / "kept", "kept")
    gone = tmp_path / "gone"
    _record(db_session, gone, "gone")
    gone.rmdir()

    removed = workspace_manager.remove_missing_workspaces(db_session, repository_id=REPO)

    assert removed == [str(gone.resolve())]
    assert [ws.task_id for ws in workspace_manager.list_workspaces(db_session)] == ["kept"]


def test_delete_workspace_keeps_assignment_row(db_session: Session, tmp_path: Path) -> None:
    ws = _record(db_session, tmp_path / "ws", "task-1")
    assignment_manager.create_assignment(
        db_session, project_id=ws.project_id, plan_uuid="u-1", plan_id=1, workspace_id=ws.id, user="alice"
    )

    assert workspace_manager.delete_workspace(db_session, tmp_path / "ws")
    db_session.expire_all()

    row = assignment_manager.get_assignment(db_session, ws.project_id, "u-1")
    assert row is not None
    assert row.workspace_id is None
    assert row.claimed_by_user == "alice"


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------


def test_clean_stale_assignments(db_session: Session, tmp_path: Path) -> None:
    ws = _record(db_session, tmp_path / "ws", "task-1")
    old = assignment_manager.create_assignment(
        db_session, project_id=ws.project_id, plan_uuid="old", plan_id=1, workspace_id=ws.id, user=None
    )
    assignment_manager.create_assignment(
        db_session, project_id=ws.project_id, plan_uuid="fresh", plan_id=2, workspace_id=ws.id, user=None
    )
    old.updated_at = utcnow() - timedelta(days=30)
    db_session.commit()

    stale = assignment_manager.list_stale_assignments(db_session, older_than_days=7)
    assert [a.plan_uuid for a in stale] == ["old"]
    assert assignment_manager.list_stale_assignments(db_session, older_than_days=7, project_id=ws.project_id + 1) == []

    assert assignment_manager.clean_stale_assignments(db_session, older_than_days=7) == 1
    assert [a.plan_uuid for a in assignment_manager.list_assignments(db_session)] == ["fresh"]

    with pytest.raises(ValueError, match="non-negative"):
        assignment_manager.clean_stale_assignments(db_session, older_than_days=-1)
