"""Move branches and bookmarks between workspaces and remotes.

Git pushes between workspaces have the destination fetch straight from the
source directory (``git fetch --update-head-ok <src> ref:ref``); no remote
is configured.  jj has no equivalent, so the source registers the
destination as a named remote (``primary`` by default) and pushes the
bookmark to it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from sqlalchemy.orm import Session

from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.resolver import repository_id_for
from weft.workspaces.vcs import VcsCommandError, error_text, get_backend, using_jj
from weft.workspaces.vcs.git import git
from weft.workspaces.vcs.jj import is_missing_bookmark_error, jj, parse_remote_list


class NoPrimaryConfiguredError(LookupError):
    def __init__(self) -> None:
        super().__init__(
            "No primary workspace is configured for this repository. "
            "Mark one with: weft workspace update <path> --primary"
        )


class SameSourceAndDestinationError(ValueError):
    def __init__(self) -> None:
        super().__init__("Source and destination workspaces are the same. Choose different workspaces.")


class RepositoryMismatchError(ValueError):
    def __init__(self, source_repository: str, destination_repository: str) -> None:
        self.source_repository = source_repository
        self.destination_repository = destination_repository
        super().__init__(
            "Source and destination workspaces are in different repositories: "
            f"{source_repository} vs {destination_repository}"
        )


class NoResolvableRefError(LookupError):
    def __init__(self, workspace: str | Path) -> None:
        self.workspace = str(workspace)
        super().__init__(
            f"No current branch/bookmark detected for workspace {workspace}. "
            "Check out or create a branch before pushing."
        )


@dataclass(frozen=True)
class PushPlan:
    """A resolved workspace-to-workspace push."""

    source: Path
    destination: Path
    ref: str
    repository_id: str


# -- Resolution ----------------------------------------------------------------


def resolve_push_plan(
    db: Session,
    *,
    source: str | Path,
    destination: str | Path | None = None,
    ref: str | None = None,
) -> PushPlan:
    """Work out where to push what.

    The destination defaults to the repository's primary workspace.  The ref
    is *ref*, else the source's live branch, else the branch recorded for
    the source workspace.
    """
    source_path = Path(source).resolve()
    repository_id = repository_id_for(db, source_path)

    if destination is None:
        primary = workspace_manager.find_primary_workspace(db, repository_id)
        if primary is None:
            raise NoPrimaryConfiguredError
        destination_path = Path(primary.path)
    else:
        destination_path = Path(destination).resolve()

    destination_repository = repository_id_for(db, destination_path)
    if destination_repository != repository_id:
        raise RepositoryMismatchError(repository_id, destination_repository)
    if destination_path == source_path:
        raise SameSourceAndDestinationError

    resolved = resolve_workspace_ref(db, source_path, ref)
    return PushPlan(source=source_path, destination=destination_path, ref=resolved, repository_id=repository_id)


def resolve_workspace_ref(db: Session, path: str | Path, ref: str | None = None) -> str:
    """*ref*, else the live branch of *path*, else the branch recorded for it."""
    path = Path(path)
    resolved = ref or get_backend(path).current_branch(path)
    if not resolved:
        recorded = workspace_manager.get_workspace_by_path(db, path)
        resolved = recorded.branch if recorded is not None else None
    if not resolved:
        raise NoResolvableRefError(path)
    return resolved


# -- Push ----------------------------------------------------------------------


def push_workspace_ref_between_workspaces(
    source: str | Path,
    destination: str | Path,
    ref: str,
    *,
    remote_name: str = "primary",
    set_bookmark_to_current: bool = False,
) -> None:
    """Make *destination*'s *ref* match *source*'s.  Raises ``VcsCommandError``."""
    source = Path(source)
    destination = Path(destination)

    if using_jj(source):
        if set_bookmark_to_current:
            set_workspace_bookmark_to_current(source, ref)
        ensure_jj_remote(source, remote_name, str(destination))
        push_workspace_ref_to_remote(source, remote_name, ref)
        return

    logger.info("Fetching {} from {} into {}", ref, source, destination)
    git(destination, "fetch", "--update-head-ok", str(source), f"{ref}:{ref}")


def push_workspace_ref_to_remote(path: str | Path, remote: str, ref: str) -> None:
    path = Path(path)
    logger.info("Pushing {} to {}", ref, remote)
    if using_jj(path):
        _track_bookmark(path, ref, remote)
        jj(path, "git", "push", "--remote", remote, "--bookmark", ref)
    else:
        git(path, "push", remote, f"{ref}:{ref}")


def set_workspace_bookmark_to_current(path: str | Path, ref: str) -> None:
    """Move (or create) *ref* at the working-copy change.  jj only."""
    path = Path(path)
    if not using_jj(path):
        return
    jj(path, "bookmark", "set", ref)


def ensure_jj_remote(path: str | Path, name: str, url: str) -> None:
    """Register remote *name* at *url*, correcting its URL when it differs."""
    path = Path(path)
    remotes = parse_remote_list(jj(path, "git", "remote", "list").stdout)
    current = remotes.get(name)
    if current is None:
        logger.debug("Adding jj remote {} -> {}", name, url)
        jj(path, "git", "remote", "add", name, url)
    elif current != url:
        logger.debug("Updating jj remote {}: {} -> {}", name, current, url)
        jj(path, "git", "remote", "set-url", name, url)


def _track_bookmark(path: Path, ref: str, remote: str) -> None:
    """Track *ref*@*remote*; a bookmark missing on the remote is not an error.

    Raises ``VcsCommandError`` for any other failure.
    """
    proc = jj(path, "bookmark", "track", ref, "--remote", remote, check=False)
    if proc.returncode == 0:
        return
    detail = f"{proc.stderr}\n{proc.stdout}"
    if not is_missing_bookmark_error(detail):
        raise VcsCommandError(
            list(proc.args),
            cwd=path,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
    logger.debug("Not tracking {}@{}: {}", ref, remote, proc.stderr.strip())


# -- Pull ----------------------------------------------------------------------


def pull_workspace_ref_if_exists(path: str | Path, ref: str, remote: str = "origin") -> bool:
    """Fetch *remote* and check out *ref* if it exists locally or remotely.

    Returns False, leaving the workspace untouched, when the ref exists in
    neither place.  Raises ``VcsCommandError`` for any other failure.
    """
    path = Path(path)
    if using_jj(path):
        return _pull_jj(path, ref, remote)
    return _pull_git(path, ref, remote)


def _pull_jj(path: Path, ref: str, remote: str) -> bool:
    jj(path, "git", "fetch", "--remote", remote)
    _track_bookmark(path, ref, remote)
    try:
        jj(path, "edit", ref)
    except VcsCommandError as exc:
        if is_missing_bookmark_error(f"{exc.stderr}\n{exc.stdout}"):
            return False
        raise
    return True


def _pull_git(path: Path, ref: str, remote: str) -> bool:
    git(path, "fetch", remote)
    has_local = git(path, "rev-parse", "--verify", "--quiet", f"refs/heads/{ref}", check=False).returncode == 0
    has_remote = (
        git(path, "rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{ref}", check=False).returncode == 0
    )
    if not has_local and not has_remote:
        return False

    if has_local:
        git(path, "checkout", ref)
    else:
        git(path, "checkout", "--track", "-b", ref, f"{remote}/{ref}")
    if has_remote:
        git(path, "pull", "--ff-only", remote, ref)
    return True


# -- Ensure --------------------------------------------------------------------


def ensure_workspace_ref_exists(path: str | Path, ref: str) -> bool:
    """Create *ref* at the current revision unless it exists.  Returns True if created."""
    path = Path(path)
    backend = get_backend(path)
    if backend.branch_exists(path, ref):
        return False
    try:
        backend.create_branch(path, ref, switch=False)
    except VcsCommandError as exc:
        logger.warning('Failed to create branch "{}": {}', ref, error_text(exc))
        raise
    logger.info('Created branch "{}" at the current revision', ref)
    return True
