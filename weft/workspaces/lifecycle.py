"""Workspace lifecycle: create a new workspace or reuse an idle one.

Creating provisions a fresh checkout (``git clone`` or a file copy of the
source checkout), optionally branches, copies the plan in, runs the
post-clone commands and records the workspace.  Any failure deletes the
half-built directory and propagates.

Reusing walks the repository's unlocked, non-primary workspaces one at a
time.  Each attempt goes through::

    Locking -> Preparing -> CopyingPlan -> RunningUpdateHooks -> Committed
                        \\            \\                  \\
                         +------------+------------------+-> RollingBack

Rolling back deletes a freshly copied plan file (and any directories that
became empty), puts the checkout back on the branch or commit it had
before, deletes the branch the attempt created, and force-releases the
lock.  Then the next candidate is tried.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from weft.workspaces.hooks import WorkspaceCommandError, command_env, run_workspace_commands
from weft.workspaces.lock import AlreadyLockedError, LOCK_FILE_NAME, WorkspaceLock
from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.models.enums import CloneMethod, VcsKind
from weft.workspaces.models.plan import Plan
from weft.workspaces.models.workspace import WorkspaceMetadataPatch
from weft.workspaces.settings import WeftSettings
from weft.workspaces.vcs import VcsBackend, VcsCommandError, error_text, get_backend, run_command, using_jj
from weft.workspaces.vcs.identity import RepositoryIdentity, get_remote_url, get_user_identity

MAX_BRANCH_SUFFIX = 100

REUSE_LOCK_COMMAND = "weft workspace add --reuse"
CREATE_LOCK_COMMAND = "weft workspace add"

_MISSING_REMOTE_MARKERS = ("no such remote", "no remotes configured", "unknown remote")


class WorkspaceCreationError(RuntimeError):
    """Provisioning a new workspace failed; the target directory was removed."""


class PrepareError(RuntimeError):
    """Preparing an existing checkout for reuse failed."""

    def __init__(self, message: str, *, created_branch: str | None = None) -> None:
        super().__init__(message)
        self.created_branch = created_branch


class _ReuseAttemptFailed(Exception):
    pass


class NoReusableWorkspaceError(RuntimeError):
    """No existing workspace could be reused.

    ``last_error`` holds the most recent concrete failure, if any candidate
    got as far as being prepared.
    """

    def __init__(self, message: str, *, last_error: str | None = None) -> None:
        self.reason = message
        self.last_error = last_error
        if last_error:
            message = f"{message}. Last reuse attempt failed: {last_error}"
        super().__init__(message)


@dataclass
class RestoreState:
    """Where a checkout was before a reuse attempt touched it."""

    branch: str | None
    commit: str | None
    kind: VcsKind

    @property
    def targets(self) -> list[str]:
        """Refs to try when restoring, most specific first."""
        return list(dict.fromkeys(t for t in (self.branch, self.commit) if t))


@dataclass
class WorkspaceResult:
    path: Path
    task_id: str
    branch: str | None
    plan_file: Path | None = None
    reused: bool = False


@dataclass
class ReuseRequest:
    """What a reused workspace should be prepared for."""

    branch_name: str
    main_repo_root: Path
    base_branch: str | None = None
    create_branch: bool = True
    plan_file: Path | None = None
    plan: Plan | None = None
    name: str | None = None
    issue_urls: list[str] = field(default_factory=list)


# -- Branch helpers ------------------------------------------------------------


def find_unique_branch_name(path: Path, base_name: str, backend: VcsBackend) -> str:
    """``base_name``, or ``base_name-2``, ``-3`` ... if taken."""
    candidate = base_name
    suffix = 2
    while backend.branch_exists(path, candidate):
        if suffix > MAX_BRANCH_SUFFIX:
            msg = f"Could not find unique branch name after {MAX_BRANCH_SUFFIX} attempts, base: {base_name}"
            raise PrepareError(msg)
        candidate = f"{base_name}-{suffix}"
        suffix += 1
    if candidate != base_name:
        logger.info('Branch "{}" already exists, using "{}" instead', base_name, candidate)
    return candidate


# -- Prepare -------------------------------------------------------------------


def prepare_existing_workspace(
    path: Path,
    *,
    branch_name: str,
    base_branch: str | None = None,
    create_branch: bool = True,
    allow_offline: bool = False,
) -> str:
    """Fetch, move onto *base_branch* and (optionally) create *branch_name*.

    Returns the branch the workspace ends up on, which may carry a numeric
    suffix.  Raises ``PrepareError``.
    """
    backend = get_backend(path)
    is_jj = backend.kind == VcsKind.JJ

    _fetch_latest(path, backend, allow_offline=allow_offline)

    base = base_branch or backend.trunk_branch(path)
    logger.info('Checking out base branch "{}"', base)

    try:
        if is_jj and not create_branch:
            backend.checkout(path, base)
        else:
            backend.start_from(path, base)
    except VcsCommandError as exc:
        msg = f'Failed to checkout base branch "{base}": {error_text(exc)}'
        raise PrepareError(msg) from exc

    if not create_branch:
        logger.info("Skipping branch creation")
        return base

    actual = find_unique_branch_name(path, branch_name, backend)
    logger.info('Creating branch "{}"', actual)
    try:
        backend.create_branch(path, actual)
    except VcsCommandError as exc:
        msg = f'Failed to create branch "{actual}": {error_text(exc)}'
        created = actual if backend.branch_exists(path, actual) else None
        raise PrepareError(msg, created_branch=created) from exc
    return actual


def _fetch_latest(path: Path, backend: VcsBackend, *, allow_offline: bool) -> None:
    has_remote = backend.has_remote(path)
    if has_remote is False:
        logger.warning("No remote configured; skipping fetch.")
        return

    logger.info("Fetching latest changes from remote...")
    try:
        backend.fetch(path)
    except VcsCommandError as exc:
        output = f"{exc.stderr}\n{exc.stdout}".lower()
        if has_remote is None and any(marker in output for marker in _MISSING_REMOTE_MARKERS):
            logger.warning("No remote configured; skipping fetch.")
        elif allow_offline:
            logger.warning("Failed to fetch from remote (continuing offline): {}", error_text(exc))
        else:
            msg = f"Failed to fetch from remote: {error_text(exc)}"
            raise PrepareError(msg) from exc


# -- Rollback ------------------------------------------------------------------


def capture_restore_state(path: Path) -> RestoreState | None:
    try:
        backend = get_backend(path)
        return RestoreState(
            branch=backend.current_branch(path),
            commit=backend.current_commit_hash(path),
            kind=backend.kind,
        )
    except (OSError, VcsCommandError) as exc:
        logger.warning("Failed to capture workspace state before reuse: {}", exc)
        return None


def restore_workspace_state(path: Path, state: RestoreState, created_branch: str | None) -> bool:
    """Put *path* back where *state* says it was.  Problems are warnings.

    Returns True when the checkout was restored.
    """
    targets = state.targets
    if not targets:
        logger.warning("Unable to restore workspace state: no branch or commit recorded.")
        return False

    backend = get_backend(path)
    last_error = ""
    for target in targets:
        try:
            backend.checkout(path, target)
        except VcsCommandError as exc:
            last_error = error_text(exc)
            continue
        break
    else:
        logger.warning("Failed to restore workspace to {}: {}", targets[0], last_error)
        return False

    if created_branch and created_branch != state.branch:
        try:
            backend.delete_branch(path, created_branch)
        except VcsCommandError as exc:
            logger.warning('Failed to delete branch "{}": {}', created_branch, error_text(exc))
    return True


def cleanup_copied_plan(workspace: Path, plan_path: Path | None, existed: bool) -> None:
    """Remove a plan file the attempt copied in, then prune emptied parents."""
    if plan_path is None or existed:
        return

    workspace = workspace.resolve()
    target = plan_path.resolve()
    if target == workspace or workspace not in target.parents:
        logger.warning("Skipping plan cleanup for unexpected path: {}", plan_path)
        return

    try:
        target.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove copied plan file: {}", exc)
        return

    current = target.parent
    while current != workspace:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def _plan_destination(plan_file: Path, main_repo_root: Path, workspace: Path) -> Path:
    return workspace / plan_file.resolve().relative_to(main_repo_root.resolve())


def _copy_plan(plan_file: Path, main_repo_root: Path, workspace: Path) -> tuple[Path, bool]:
    """Copy *plan_file* to the same relative location inside *workspace*.

    Returns the destination and whether it already existed.
    """
    destination = _plan_destination(plan_file, main_repo_root, workspace)
    relative = destination.relative_to(workspace)
    existed = destination.exists()
    destination.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Copying plan file to workspace: {}", relative)
    try:
        shutil.copyfile(plan_file, destination)
    except OSError:
        cleanup_copied_plan(workspace, destination, existed)
        raise
    return destination, existed


# -- Reuse ---------------------------------------------------------------------


def try_reuse_existing_workspace(
    db: Session,
    settings: WeftSettings,
    repository_id: str,
    request: ReuseRequest,
    *,
    lock: WorkspaceLock | None = None,
) -> WorkspaceResult:
    """Prepare the first idle workspace that accepts *request*.

    Raises ``NoReusableWorkspaceError`` when every candidate was skipped or
    rolled back.
    """
    lock = lock or WorkspaceLock()
    workspace_manager.remove_missing_workspaces(db, repository_id=repository_id)

    candidates = [
        ws
        for ws in workspace_manager.list_workspaces(db, repository_id=repository_id)
        if not ws.is_primary and lock.get_lock_info(ws.path) is None
    ]
    if not candidates:
        raise NoReusableWorkspaceError("No unlocked workspaces found for reuse")

    owner = get_user_identity(settings.user)
    found_clean = False
    last_error: str | None = None

    for ws in candidates:
        path = Path(ws.path)
        if not path.is_dir():
            continue
        is_jj = using_jj(path)
        try:
            dirty = get_backend(path).has_uncommitted_changes(path)
        except VcsCommandError as exc:
            logger.warning("Skipping workspace {}: {}", path, error_text(exc))
            continue
        if dirty and not is_jj:
            logger.info("Skipping workspace {}: has uncommitted changes", path)
            continue
        found_clean = True

        try:
            info = lock.acquire(path, REUSE_LOCK_COMMAND, owner=owner)
        except AlreadyLockedError as exc:
            logger.warning("Failed to acquire workspace lock: {}", exc)
            continue
        lock.setup_cleanup_handlers(path, info.type)

        try:
            branch = _attempt_reuse(path, ws.task_id, settings, request, lock)
        except _ReuseAttemptFailed as exc:
            last_error = str(exc)
            continue

        _record_reuse(db, path, request, branch)
        plan_file = _plan_destination(request.plan_file, request.main_repo_root, path) if request.plan_file else None
        return WorkspaceResult(path=path, task_id=ws.task_id, branch=branch, plan_file=plan_file, reused=True)

    if not found_clean:
        raise NoReusableWorkspaceError("No clean, unlocked workspaces found for reuse", last_error=last_error)
    raise NoReusableWorkspaceError("No available workspace could be prepared for reuse", last_error=last_error)


def _attempt_reuse(
    path: Path,
    task_id: str,
    settings: WeftSettings,
    request: ReuseRequest,
    lock: WorkspaceLock,
) -> str:
    """Run one reuse attempt on a locked candidate and return its branch.

    Failures are rolled back and raised as ``_ReuseAttemptFailed``.
    Unexpected exceptions are rolled back and re-raised.
    """
    restore = capture_restore_state(path)
    created_branch: str | None = None
    plan_dest: Path | None = None
    plan_existed = False

    def rollback(reason: str) -> _ReuseAttemptFailed:
        logger.warning(reason)
        cleanup_copied_plan(path, plan_dest, plan_existed)
        if restore is not None:
            restore_workspace_state(path, restore, created_branch if request.create_branch else None)
        lock.release(path, force=True)
        return _ReuseAttemptFailed(reason)

    logger.info("Reusing existing workspace: {}", path)
    try:
        try:
            branch = prepare_existing_workspace(
                path,
                branch_name=request.branch_name,
                base_branch=request.base_branch,
                create_branch=request.create_branch,
                allow_offline=settings.allow_offline,
            )
            created_branch = branch
        except PrepareError as exc:
            created_branch = exc.created_branch
            raise rollback(f"Failed to prepare workspace for reuse: {exc}") from exc

        if request.plan_file is not None:
            try:
                plan_dest, plan_existed = _copy_plan(request.plan_file, request.main_repo_root, path)
            except (OSError, ValueError) as exc:
                raise rollback(f"Failed to copy plan file: {exc}") from exc

        try:
            run_workspace_commands(
                settings.workspace.update_commands,
                path,
                env=command_env(task_id, plan_dest),
            )
        except WorkspaceCommandError as exc:
            raise rollback(f"Failed to run workspace update commands for workspace reuse: {exc}") from exc
    except _ReuseAttemptFailed:
        raise
    except BaseException:
        rollback(f"Unexpected error while reusing {path}")
        raise

    return branch


def _record_reuse(db: Session, path: Path, request: ReuseRequest, branch: str | None) -> None:
    patch = WorkspaceMetadataPatch(name=request.name or "", branch=branch or "")
    plan = request.plan
    if plan is not None:
        plan_id = str(plan.id) if plan.id is not None else ""
        title = plan.display_title
        patch.description = f"{plan_id} - {title}" if plan_id else title
        patch.plan_id = plan_id
        patch.plan_title = title
        patch.issue_urls = list(plan.issue)
    else:
        patch.description = ""
        patch.plan_id = ""
        patch.plan_title = ""
        patch.issue_urls = []
    if request.issue_urls:
        patch.issue_urls = list(request.issue_urls)
    workspace_manager.patch_workspace(db, path, patch)


# -- Create --------------------------------------------------------------------


def create_workspace(
    db: Session,
    settings: WeftSettings,
    identity: RepositoryIdentity,
    task_id: str,
    *,
    branch_name: str | None = None,
    base_branch: str | None = None,
    create_branch: bool | None = None,
    plan_file: Path | None = None,
    plan: Plan | None = None,
    target_dir: str | None = None,
    lock: WorkspaceLock | None = None,
) -> WorkspaceResult:
    """Provision, record and lock a new workspace.

    Raises ``WorkspaceCreationError``; the target directory is removed on
    any failure after it was created.
    """
    config = settings.workspace
    main_root = identity.git_root
    if not config.clone_location:
        msg = "workspace.clone_location must be set to create a new workspace"
        raise WorkspaceCreationError(msg)

    clone_base = _resolve_against(main_root, config.clone_location)
    clone_base.mkdir(parents=True, exist_ok=True)

    repository_url = config.repository_url
    source_dir: Path | None = None
    if config.clone_method == CloneMethod.GIT:
        repository_url = repository_url or identity.remote_url
        if not repository_url:
            msg = "Could not infer a repository URL from origin; set workspace.repository_url"
            raise WorkspaceCreationError(msg)
        repo_name = repository_url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git") or "repo"
    else:
        source_dir = _copy_source(db, settings, identity)
        if not repository_url:
            repository_url = get_remote_url(source_dir)
        repo_name = source_dir.name

    if target_dir:
        target = _resolve_against(clone_base, target_dir)
    else:
        target = clone_base / f"{repo_name}-{task_id}"
    if target.exists():
        msg = f"Target directory already exists: {target}"
        raise WorkspaceCreationError(msg)

    branch_name = branch_name or task_id
    should_branch = config.create_branch if create_branch is None else create_branch
    plan_dest: Path | None = None

    logger.info("Creating workspace at {}", target)
    try:
        if config.clone_method == CloneMethod.GIT:
            logger.info("Cloning {} to {}", repository_url, target)
            run_command(["git", "clone", repository_url, str(target)], main_root)
        else:
            logger.info("Copying {} to {}", source_dir, target)
            _copy_checkout(source_dir, target)
            run_command(["git", "init"], target)
            if repository_url:
                _set_origin(target, repository_url)

        _checkout_new_workspace(target, base_branch, branch_name, should_branch)

        if plan_file is not None:
            plan_dest, _ = _copy_plan(plan_file, main_root, target)

        if config.post_clone_commands:
            logger.info("Running post-clone commands")
            run_workspace_commands(config.post_clone_commands, target, env=command_env(task_id, plan_dest))

        workspace_manager.record_workspace(
            db,
            path=target,
            task_id=task_id,
            repository_id=identity.repository_id,
            remote_url=identity.remote_url,
            git_root=str(main_root),
            branch=branch_name if should_branch else None,
            name=task_id,
            description=plan.display_title if plan is not None else None,
            plan_id=str(plan.id) if plan is not None and plan.id is not None else None,
            plan_title=(plan.display_title or None) if plan is not None else None,
            issue_urls=list(plan.issue) if plan is not None else [],
        )
    except (OSError, ValueError, SQLAlchemyError, VcsCommandError, WorkspaceCommandError) as exc:
        if isinstance(exc, SQLAlchemyError):
            db.rollback()
        shutil.rmtree(target, ignore_errors=True)
        msg = f"Failed to create workspace at {target}: {exc}"
        raise WorkspaceCreationError(msg) from exc

    lock = lock or WorkspaceLock()
    try:
        info = lock.acquire(target, CREATE_LOCK_COMMAND, owner=get_user_identity(settings.user))
        lock.setup_cleanup_handlers(target, info.type)
    except AlreadyLockedError as exc:
        logger.warning("Failed to acquire workspace lock: {}", exc)

    return WorkspaceResult(
        path=target.resolve(),
        task_id=task_id,
        branch=branch_name if should_branch else None,
        plan_file=plan_dest,
    )


def _resolve_against(root: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return (path if path.is_absolute() else root / path).resolve()


def _copy_source(db: Session, settings: WeftSettings, identity: RepositoryIdentity) -> Path:
    """Source checkout for copy-based cloning: configured, else primary, else the main repo."""
    configured = settings.workspace.source_directory
    if configured:
        source = _resolve_against(identity.git_root, configured)
    else:
        primary = workspace_manager.find_primary_workspace(db, identity.repository_id)
        if primary is not None:
            source = Path(primary.path)
            logger.info("Using primary workspace as source directory: {}", source)
        else:
            source = identity.git_root
            logger.info("Using main repository root as source directory: {}", source)
    if not source.is_dir():
        msg = f"Source directory does not exist: {source}"
        raise WorkspaceCreationError(msg)
    return source


def _copy_checkout(source: Path, target: Path) -> None:
    """Copy tracked files plus the ``.git`` / ``.jj`` metadata, without lock files."""
    proc = run_command(["git", "ls-files", "-z", "--full-name"], source)
    files = [entry for entry in proc.stdout.split("\0") if entry]

    target.mkdir(parents=True)
    for relative in files:
        src = source / relative
        dst = target / relative
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.is_symlink():
            dst.symlink_to(src.readlink())
        elif src.is_file():
            shutil.copy2(src, dst)

    ignore = shutil.ignore_patterns(LOCK_FILE_NAME, f".{LOCK_FILE_NAME}")
    for meta in (".git", ".jj"):
        src = source / meta
        if src.is_dir():
            shutil.copytree(src, target / meta, symlinks=True, ignore=ignore)
        elif src.is_file():
            shutil.copy2(src, target / meta)


def _set_origin(target: Path, url: str) -> None:
    if run_command(["git", "remote", "get-url", "origin"], target, check=False).returncode == 0:
        proc = run_command(["git", "remote", "set-url", "origin", url], target, check=False)
    else:
        proc = run_command(["git", "remote", "add", "origin", url], target, check=False)
    if proc.returncode != 0:
        logger.warning("Failed to configure origin remote: {}", proc.stderr.strip())


def _checkout_new_workspace(target: Path, base_branch: str | None, branch_name: str, create_branch: bool) -> None:
    backend = get_backend(target)
    is_jj = backend.kind == VcsKind.JJ
    started_new_change = False

    if base_branch:
        logger.info('Checking out base branch "{}"', base_branch)
        if is_jj and create_branch:
            backend.start_from(target, base_branch)
            started_new_change = True
        else:
            backend.checkout(target, base_branch)

    if not create_branch:
        return

    logger.info("Creating and checking out branch {}", branch_name)
    if is_jj and not started_new_change:
        run_command(["jj", "new"], target)
    backend.create_branch(target, branch_name)

