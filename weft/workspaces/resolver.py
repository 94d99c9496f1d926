"""Turn a user-supplied workspace identifier into a tracked workspace.

An identifier is either a directory (absolute, or relative to the current
directory) or a task id.  Without an identifier the repository containing
the current directory is used.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from sqlalchemy.orm import Session

from weft.workspaces.db.tables import Workspace
from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.vcs.identity import RepositoryIdentity, find_repository_root, get_repository_identity


class DirectoryMissingError(LookupError):
    """The identifier looks like a path but the directory does not exist."""


class NotATrackedWorkspaceError(LookupError):
    """The directory exists but is not a recorded workspace."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        super().__init__(
            f"Directory {path} is not a tracked workspace. Run weft workspace list to see known workspaces."
        )


class AmbiguousTaskIdError(LookupError):
    """More than one workspace is recorded for a task id."""

    def __init__(self, task_id: str, paths: list[str]) -> None:
        self.task_id = task_id
        self.paths = paths
        super().__init__(f"Multiple workspaces found for task ID {task_id}. Please specify the workspace directory.")


def _looks_like_path(identifier: str) -> bool:
    return identifier.startswith((".", "/", "~")) or "/" in identifier


def resolve_workspace_identifier(
    db: Session,
    identifier: str | None = None,
    *,
    cwd: str | Path | None = None,
) -> Workspace:
    """Find the workspace named by *identifier*.

    Raises ``DirectoryMissingError``, ``NotATrackedWorkspaceError``,
    ``AmbiguousTaskIdError`` or ``WorkspaceNotFoundError``.
    """
    base = Path(cwd) if cwd is not None else Path.cwd()

    if not identifier:
        root = find_repository_root(base) or base.resolve()
        workspace = workspace_manager.get_workspace_by_path(db, root)
        if workspace is None:
            raise NotATrackedWorkspaceError(root)
        return workspace

    candidate = Path(identifier).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    if candidate.is_dir():
        workspace = workspace_manager.get_workspace_by_path(db, candidate)
        if workspace is None:
            raise NotATrackedWorkspaceError(candidate.resolve())
        return workspace
    if _looks_like_path(identifier):
        msg = f"Directory does not exist: {candidate}"
        raise DirectoryMissingError(msg)

    matches = workspace_manager.list_workspaces(db, task_id=identifier)
    if not matches:
        msg = f"No workspace found for task ID: {identifier}"
        raise workspace_manager.WorkspaceNotFoundError(msg)
    if len(matches) > 1:
        raise AmbiguousTaskIdError(identifier, [ws.path for ws in matches])
    return matches[0]


def repository_id_for(db: Session, path: str | Path) -> str:
    """Repository id of *path*: the recorded one for tracked workspaces, else computed."""
    workspace = workspace_manager.get_workspace_by_path(db, path)
    if workspace is not None:
        return workspace.repository_id
    return get_repository_identity(path).repository_id


def current_repository_identity(db: Session, cwd: str | Path | None = None) -> RepositoryIdentity:
    """Identity of the repository at *cwd*, using the recorded id when it is a tracked workspace."""
    identity = get_repository_identity(cwd)
    workspace = workspace_manager.get_workspace_by_path(db, identity.git_root)
    if workspace is not None and workspace.repository_id != identity.repository_id:
        return replace(identity, repository_id=workspace.repository_id)
    return identity
