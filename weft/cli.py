from __future__ import annotations

import json
import secrets
import shlex
import subprocess
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click
from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from weft.workspaces.db.engine import create_engine, create_session_factory
from weft.workspaces.db.tables import Assignment
from weft.workspaces.hooks import WorkspaceCommandError
from weft.workspaces.lifecycle import (
    NoReusableWorkspaceError,
    ReuseRequest,
    WorkspaceCreationError,
    WorkspaceResult,
    create_workspace,
    try_reuse_existing_workspace,
)
from weft.workspaces.lock import AlreadyLockedError, WorkspaceLock, describe_lock
from weft.workspaces.log import setup_logging
from weft.workspaces.managers import assignments as assignment_manager
from weft.workspaces.managers import workspaces as workspace_manager
from weft.workspaces.managers.projects import get_project
from weft.workspaces.managers.workspaces import WorkspaceNotFoundError
from weft.workspaces.models.enums import LockType, PlanStatus
from weft.workspaces.models.plan import Plan
from weft.workspaces.models.workspace import WorkspaceMetadataPatch
from weft.workspaces.ownership import claim_plan, log_claim_outcome, log_release_outcome, release_plan, reset_plan_status
from weft.workspaces.plans import (
    PlanFileError,
    PlanNotFoundError,
    generate_branch_name,
    read_plan,
    resolve_plan_file,
    set_plan_status,
)
from weft.workspaces.resolver import (
    AmbiguousTaskIdError,
    DirectoryMissingError,
    NotATrackedWorkspaceError,
    current_repository_identity,
    resolve_workspace_identifier,
)
from weft.workspaces.settings import WeftSettings, get_settings
from weft.workspaces.sync import (
    NoPrimaryConfiguredError,
    NoResolvableRefError,
    RepositoryMismatchError,
    SameSourceAndDestinationError,
    ensure_workspace_ref_exists,
    pull_workspace_ref_if_exists,
    push_workspace_ref_between_workspaces,
    push_workspace_ref_to_remote,
    resolve_push_plan,
    resolve_workspace_ref,
)
from weft.workspaces.vcs import VcsCommandError
from weft.workspaces.vcs.identity import RepositoryIdentity, find_repository_root, get_user_identity

# Errors reported as a one-line message instead of a traceback.
USER_ERRORS = (
    AlreadyLockedError,
    AmbiguousTaskIdError,
    DirectoryMissingError,
    NoPrimaryConfiguredError,
    NoResolvableRefError,
    NoReusableWorkspaceError,
    NotATrackedWorkspaceError,
    PlanFileError,
    PlanNotFoundError,
    RepositoryMismatchError,
    SameSourceAndDestinationError,
    VcsCommandError,
    WorkspaceCommandError,
    WorkspaceCreationError,
    WorkspaceNotFoundError,
)


class WeftGroup(click.Group):
    def invoke(self, ctx: click.Context) -> object:
        try:
            return super().invoke(ctx)
        except USER_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc


@click.group(cls=WeftGroup)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """weft - coordinate parallel workspaces of one repository."""
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = settings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session(settings: WeftSettings) -> Iterator[Session]:
    """Open a session, migrating SQLite databases to head first."""
    url = settings.resolve_database_url()
    if make_url(url).get_backend_name() == "sqlite":
        from alembic import command

        command.upgrade(_alembic_config(url), "head")

    engine = create_engine(url)
    try:
        with create_session_factory(engine)() as session:
            yield session
    finally:
        engine.dispose()


def _tasks_dir(settings: WeftSettings, identity: RepositoryIdentity) -> Path:
    tasks_dir = Path(settings.tasks_dir).expanduser()
    return tasks_dir if tasks_dir.is_absolute() else identity.git_root / tasks_dir


def _load_plan(identifier: str, settings: WeftSettings, identity: RepositoryIdentity) -> tuple[Path, Plan]:
    path = resolve_plan_file(identifier, _tasks_dir(settings, identity))
    return path, read_plan(path)


def _workspace_path(db: Session, identifier: str | None) -> Path:
    """Directory named by *identifier*; the current checkout when omitted, tracked or not."""
    if identifier:
        return Path(resolve_workspace_identifier(db, identifier).path)
    return find_repository_root(Path.cwd()) or Path.cwd().resolve()


def _random_task_id() -> str:
    return f"task-{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@main.group()
def workspace() -> None:
    """Create, reuse, lock and sync workspaces."""


@workspace.command("add")
@click.argument("plan_identifier", required=False)
@click.option("--id", "task_id", default=None, help="Task id (default: task-<plan id>).")
@click.option("--reuse", is_flag=True, default=False, help="Reuse an idle workspace; fail if none is available.")
@click.option("--try-reuse", is_flag=True, default=False, help="Reuse an idle workspace, else create one.")
@click.option("--from-branch", "base_branch", default=None, help="Base branch (default: trunk).")
@click.option("--branch", "branch_name", default=None, help="Branch to create (default: the task id).")
@click.option("--create-branch/--no-create-branch", default=None, help="Create the task branch.")
@click.option("--target-dir", default=None, help="Directory for a new workspace.")
@click.option("--name", default=None, help="Workspace name.")
@click.option("--issue", "issue_urls", multiple=True, help="Issue URL (repeatable).")
@click.pass_obj
def workspace_add(
    settings: WeftSettings,
    plan_identifier: str | None,
    task_id: str | None,
    reuse: bool,
    try_reuse: bool,
    base_branch: str | None,
    branch_name: str | None,
    create_branch: bool | None,
    target_dir: str | None,
    name: str | None,
    issue_urls: tuple[str, ...],
) -> None:
    """Create a workspace for a plan, or reuse an idle one."""
    if reuse and try_reuse:
        msg = "--reuse and --try-reuse are mutually exclusive"
        raise click.UsageError(msg)

    with _session(settings) as db:
        identity = current_repository_identity(db)
        plan_file: Path | None = None
        plan: Plan | None = None
        if plan_identifier:
            plan_file, plan = _load_plan(plan_identifier, settings, identity)

        if not task_id:
            if plan is not None and plan.id is not None:
                task_id = f"task-{plan.id}"
            elif plan_identifier:
                task_id = f"task-{Path(plan_identifier).stem}"
            else:
                task_id = _random_task_id()

        result: WorkspaceResult | None = None
        if reuse or try_reuse:
            request = ReuseRequest(
                branch_name=branch_name or task_id,
                main_repo_root=identity.git_root,
                base_branch=base_branch,
                create_branch=True if create_branch is None else create_branch,
                plan_file=plan_file,
                plan=plan,
                name=name,
                issue_urls=list(issue_urls),
            )
            try:
                result = try_reuse_existing_workspace(db, settings, identity.repository_id, request)
            except NoReusableWorkspaceError as exc:
                if reuse:
                    detail = (
                        f"Last reuse attempt failed: {exc.last_error}"
                        if exc.last_error
                        else "All workspaces are either locked or have uncommitted changes."
                    )
                    msg = f"No available workspace found for reuse. {detail}"
                    raise click.ClickException(msg) from exc
                logger.info("No available workspace found for reuse, creating new workspace...")

        if result is None:
            result = create_workspace(
                db,
                settings,
                identity,
                task_id,
                branch_name=branch_name,
                base_branch=base_branch,
                create_branch=create_branch,
                plan_file=plan_file,
                plan=plan,
                target_dir=target_dir,
            )
            if name or issue_urls:
                patch = WorkspaceMetadataPatch()
                if name:
                    patch.name = name
                if issue_urls:
                    patch.issue_urls = list(issue_urls)
                workspace_manager.patch_workspace(db, result.path, patch)

        if plan is not None:
            if result.plan_file is not None:
                try:
                    set_plan_status(result.plan_file, PlanStatus.IN_PROGRESS)
                except (OSError, PlanFileError) as exc:
                    logger.warning("Failed to update plan status: {}", exc)
            try:
                claim = claim_plan(
                    db,
                    plan,
                    result.path,
                    repository_id=identity.repository_id,
                    user=get_user_identity(settings.user),
                    remote_url=identity.remote_url,
                )
            except PlanFileError as exc:
                logger.warning("Plan not claimed: {}", exc)
            else:
                log_claim_outcome(claim, plan.label)

    click.echo(f"✓ Workspace {'reused' if result.reused else 'created'} successfully!")
    click.echo(f"  Path: {result.path}")
    click.echo(f"  ID: {result.task_id}")


@workspace.command("list")
@click.option("--all", "show_all", is_flag=True, default=False, help="Include other repositories.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "tsv", "json"]),
    default="table",
    show_default=True,
)
@click.pass_obj
def workspace_list(settings: WeftSettings, show_all: bool, output_format: str) -> None:
    """List recorded workspaces with their lock status."""
    lock = WorkspaceLock()
    with _session(settings) as db:
        repository_id = None if show_all else current_repository_identity(db).repository_id
        workspace_manager.remove_missing_workspaces(db, repository_id=repository_id)
        infos = [
            workspace_manager.to_info(ws, lock.get_lock_info(ws.path))
            for ws in workspace_manager.list_workspaces(db, repository_id=repository_id)
        ]

    if output_format == "json":
        click.echo(json.dumps([info.model_dump(mode="json") for info in infos], indent=2))
        return

    rows = [
        [
            info.path,
            info.task_id,
            info.branch or "",
            "yes" if info.is_primary else "",
            describe_lock(info.locked_by) if info.locked_by else "",
            info.name or "",
        ]
        for info in infos
    ]
    if output_format == "tsv":
        for row in rows:
            click.echo("\t".join(row))
        return

    if not rows:
        click.echo("No workspaces found.")
        return
    header = ["PATH", "TASK", "BRANCH", "PRIMARY", "LOCK", "NAME"]
    widths = [max(len(r[i]) for r in [header, *rows]) for i in range(len(header))]
    for row in [header, *rows]:
        click.echo("  ".join(cell.ljust(width) for cell, width in zip(row, widths, strict=True)).rstrip())


@workspace.command("update")
@click.argument("target", required=False)
@click.option("--name", default=None)
@click.option("--description", default=None)
@click.option("--branch", default=None)
@click.option("--from-plan", "plan_identifier", default=None, help="Copy title and issues from a plan.")
@click.option("--issue", "issue_urls", multiple=True, help="Issue URL (repeatable, replaces existing).")
@click.option("--primary/--no-primary", default=None, help="Mark as the repository's primary workspace.")
@click.pass_obj
def workspace_update(
    settings: WeftSettings,
    target: str | None,
    name: str | None,
    description: str | None,
    branch: str | None,
    plan_identifier: str | None,
    issue_urls: tuple[str, ...],
    primary: bool | None,
) -> None:
    """Update a workspace's recorded metadata."""
    with _session(settings) as db:
        ws = resolve_workspace_identifier(db, target)
        patch = WorkspaceMetadataPatch()
        if plan_identifier:
            _, plan = _load_plan(plan_identifier, settings, current_repository_identity(db))
            plan_id = str(plan.id) if plan.id is not None else ""
            patch.description = f"{plan_id} - {plan.display_title}" if plan_id else plan.display_title
            patch.plan_id = plan_id
            patch.plan_title = plan.display_title
            patch.issue_urls = list(plan.issue)
        if name is not None:
            patch.name = name
        if description is not None:
            patch.description = description
        if branch is not None:
            patch.branch = branch
        if issue_urls:
            patch.issue_urls = list(issue_urls)
        if primary is not None:
            patch.is_primary = primary
        updated = workspace_manager.patch_workspace(db, ws.path, patch)
    click.echo(f"✓ Updated workspace {updated.path}")


@workspace.command("lock")
@click.argument("target", required=False)
@click.option("--available", is_flag=True, default=False, help="Lock the first unlocked non-primary workspace.")
@click.option("--create", is_flag=True, default=False, help="With --available, create one if none is free.")
@click.pass_obj
def workspace_lock(settings: WeftSettings, target: str | None, available: bool, create: bool) -> None:
    """Lock a workspace persistently and print its path."""
    if available and target:
        msg = "--available cannot be combined with a target workspace"
        raise click.UsageError(msg)
    if create and not available:
        msg = "--create requires --available"
        raise click.UsageError(msg)

    lock = WorkspaceLock()
    owner = get_user_identity(settings.user)
    with _session(settings) as db:
        if available:
            identity = current_repository_identity(db)
            workspace_manager.remove_missing_workspaces(db, repository_id=identity.repository_id)
            for ws in workspace_manager.list_workspaces(db, repository_id=identity.repository_id):
                if ws.is_primary or lock.is_locked(ws.path):
                    continue
                try:
                    lock.acquire(ws.path, "weft workspace lock --available", owner=owner)
                except AlreadyLockedError:
                    continue
                click.echo(ws.path)
                return
            if not create:
                msg = "No available workspace found. Use --create to create one."
                raise click.ClickException(msg)
            result = create_workspace(db, settings, identity, _random_task_id())
            click.echo(str(result.path))
            return

        path = Path(resolve_workspace_identifier(db, target).path)
        lock.clear_stale(path)
        lock.acquire(path, "weft workspace lock", owner=owner)
    click.echo(str(path))


@workspace.command("unlock")
@click.argument("target", required=False)
@click.pass_obj
def workspace_unlock(settings: WeftSettings, target: str | None) -> None:
    """Remove a workspace's lock, whoever holds it."""
    lock = WorkspaceLock()
    with _session(settings) as db:
        path = Path(resolve_workspace_identifier(db, target).path)
    if not lock.is_locked(path):
        msg = f"Workspace is not locked: {path}"
        raise click.ClickException(msg)
    lock.release(path, force=True)
    click.echo(f"✓ Unlocked workspace {path}")


@workspace.command("run", context_settings={"ignore_unknown_options": True})
@click.option("--workspace", "target", default=None, help="Workspace directory or task id.")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def workspace_run(ctx: click.Context, target: str | None, command: tuple[str, ...]) -> None:
    """Run COMMAND in a workspace while holding a process lock on it."""
    settings: WeftSettings = ctx.obj
    lock = WorkspaceLock()
    with _session(settings) as db:
        path = Path(resolve_workspace_identifier(db, target).path)

    info = lock.acquire(
        path,
        f"weft workspace run {shlex.join(command)}",
        owner=get_user_identity(settings.user),
        lock_type=LockType.PID,
    )
    lock.setup_cleanup_handlers(path, info.type)
    try:
        returncode = subprocess.run(list(command), cwd=path, check=False).returncode  # noqa: S603
    finally:
        lock.release(path)
    ctx.exit(returncode)


@workspace.command("push")
@click.argument("target", required=False)
@click.option("--from", "source", default=None, help="Source workspace (default: current directory).")
@click.option("--to", "destination", default=None, help="Destination workspace (default: the primary).")
@click.option("--branch", "ref", default=None, help="Branch/bookmark to push (default: the current one).")
@click.option("--remote", default=None, help="Push to this named remote instead of a workspace.")
@click.option("--set-bookmark", is_flag=True, default=False, help="jj: move the bookmark to @ before pushing.")
@click.pass_obj
def workspace_push(
    settings: WeftSettings,
    target: str | None,
    source: str | None,
    destination: str | None,
    ref: str | None,
    remote: str | None,
    set_bookmark: bool,
) -> None:
    """Push the current branch from one workspace to another (default: the primary)."""
    if destination and target:
        msg = "Give the destination either as an argument or with --to, not both"
        raise click.UsageError(msg)
    destination = destination or target
    if remote and destination:
        msg = "--remote cannot be combined with a destination workspace"
        raise click.UsageError(msg)

    with _session(settings) as db:
        source_path = _workspace_path(db, source)
        if remote:
            push_ref = resolve_workspace_ref(db, source_path, ref)
            ensure_workspace_ref_exists(source_path, push_ref)
            push_workspace_ref_to_remote(source_path, remote, push_ref)
            click.echo(f"✓ Pushed {push_ref} to {remote}")
            return

        destination_path = Path(resolve_workspace_identifier(db, destination).path) if destination else None
        push = resolve_push_plan(db, source=source_path, destination=destination_path, ref=ref)

    ensure_workspace_ref_exists(push.source, push.ref)
    push_workspace_ref_between_workspaces(
        push.source,
        push.destination,
        push.ref,
        remote_name=settings.primary_remote_name,
        set_bookmark_to_current=set_bookmark,
    )
    click.echo(f"✓ Pushed {push.ref} from {push.source} to {push.destination}")


@workspace.command("pull-plan")
@click.argument("plan_identifier")
@click.option("--workspace", "target", default=None, help="Workspace directory or task id.")
@click.option("--branch", default=None, help="Branch/bookmark (default: the plan's branch).")
@click.option("--remote", default="origin", show_default=True)
@click.pass_obj
def workspace_pull_plan(
    settings: WeftSettings,
    plan_identifier: str,
    target: str | None,
    branch: str | None,
    remote: str,
) -> None:
    """Fetch a plan's branch and check it out if it exists."""
    with _session(settings) as db:
        path = _workspace_path(db, target)
        _, plan = _load_plan(plan_identifier, settings, current_repository_identity(db))

    ref = branch or plan.branch or generate_branch_name(plan)
    if not ref:
        msg = f"Could not determine a branch for plan {plan.label}; pass --branch"
        raise click.ClickException(msg)

    if not pull_workspace_ref_if_exists(path, ref, remote):
        click.echo(f'No branch/bookmark "{ref}" found in {remote}; workspace left unchanged.')
        return
    click.echo("✓ Workspace branch/bookmark pulled and checked out")


# ---------------------------------------------------------------------------
# Plan ownership
# ---------------------------------------------------------------------------


@main.command()
@click.argument("plan_identifier")
@click.option("--workspace", "target", default=None, help="Workspace directory or task id (default: here).")
@click.pass_obj
def claim(settings: WeftSettings, plan_identifier: str, target: str | None) -> None:
    """Claim a plan for a workspace and the current user."""
    with _session(settings) as db:
        identity = current_repository_identity(db)
        _, plan = _load_plan(plan_identifier, settings, identity)
        result = claim_plan(
            db,
            plan,
            _workspace_path(db, target),
            repository_id=identity.repository_id,
            user=get_user_identity(settings.user),
            remote_url=identity.remote_url,
        )
    log_claim_outcome(result, plan.label)


@main.command()
@click.argument("plan_identifier")
@click.option("--workspace", "target", default=None, help="Workspace directory or task id (default: here).")
@click.option("--reset-status", is_flag=True, default=False, help="Set the plan back to pending.")
@click.pass_obj
def release(settings: WeftSettings, plan_identifier: str, target: str | None, reset_status: bool) -> None:
    """Release a plan claimed in a workspace."""
    with _session(settings) as db:
        identity = current_repository_identity(db)
        plan_path, plan = _load_plan(plan_identifier, settings, identity)
        result = release_plan(
            db,
            plan,
            _workspace_path(db, target),
            repository_id=identity.repository_id,
            user=get_user_identity(settings.user),
        )
    log_release_outcome(result, plan.label)
    if reset_status:
        logger.info(reset_plan_status(plan_path))


@main.group()
def assignments() -> None:
    """Inspect and clean plan assignments."""


def _assignment_row(row: Assignment) -> str:
    label = str(row.plan_id) if row.plan_id is not None else row.plan_uuid
    workspace_path = row.workspace.path if row.workspace is not None else "-"
    return f"{label}\t{workspace_path}\t{row.claimed_by_user or '-'}\t{row.updated_at:%Y-%m-%d %H:%M}"


@assignments.command("list")
@click.option("--all", "show_all", is_flag=True, default=False, help="Include other repositories.")
@click.pass_obj
def assignments_list(settings: WeftSettings, show_all: bool) -> None:
    """List plan assignments."""
    with _session(settings) as db:
        project_id = None
        if not show_all:
            project = get_project(db, current_repository_identity(db).repository_id)
            if project is None:
                click.echo("No assignments found.")
                return
            project_id = project.id
        rows = assignment_manager.list_assignments(db, project_id=project_id)
        if not rows:
            click.echo("No assignments found.")
            return
        for row in rows:
            click.echo(_assignment_row(row))


@assignments.command("clean-stale")
@click.option("--days", default=7, show_default=True, type=click.IntRange(min=0), help="Age threshold in days.")
@click.option("--all", "show_all", is_flag=True, default=False, help="Include other repositories.")
@click.option("-y", "--yes", is_flag=True, default=False, help="Remove without asking for confirmation.")
@click.pass_obj
def assignments_clean_stale(settings: WeftSettings, days: int, show_all: bool, yes: bool) -> None:
    """Delete assignments not updated for a number of days.

    The stale rows are listed first and removed only after confirmation.
    """
    with _session(settings) as db:
        project_id = None
        if not show_all:
            project = get_project(db, current_repository_identity(db).repository_id)
            if project is None:
                click.echo("No stale assignments found.")
                return
            project_id = project.id
        stale = assignment_manager.list_stale_assignments(db, older_than_days=days, project_id=project_id)
        if not stale:
            click.echo("No stale assignments found.")
            return
        for row in stale:
            click.echo(_assignment_row(row))
        if not yes:
            click.confirm(f"Remove {len(stale)} stale assignment(s)?", abort=True)
        removed = assignment_manager.clean_stale_assignments(db, older_than_days=days, project_id=project_id)
    click.echo(f"Removed {removed} stale assignment(s)")


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


def _alembic_config(database_url: str | None = None):
    """Build an Alembic Config from the package's alembic.ini.

    Both alembic.ini and the alembic/ directory live inside the package,
    so this works whether running from source or from an installed package.
    """
    from alembic.config import Config

    ini_path = Path(__file__).parent / "workspaces" / "alembic.ini"
    cfg = Config(str(ini_path))
    cfg.attributes["configure_logger"] = False
    if database_url:
        cfg.attributes["database_url"] = database_url
    return cfg


@main.group()
def db() -> None:
    """Database migration and management commands."""


@db.command()
@click.option("--revision", default="head", help="Target revision (default: head).")
def upgrade(revision: str) -> None:
    """Run database migrations forward."""
    from alembic import command

    command.upgrade(_alembic_config(), revision)
    click.echo(f"Database upgraded to {revision}.")


@db.command()
@click.option("--revision", default="-1", help="Target revision (default: -1, one step back).")
def downgrade(revision: str) -> None:
    """Roll back database migrations."""
    from alembic import command

    command.downgrade(_alembic_config(), revision)
    click.echo(f"Database downgraded to {revision}.")


@db.command()
@click.argument("message")
def migrate(message: str) -> None:
    """Autogenerate a new migration from model changes."""
    from alembic import command

    command.revision(_alembic_config(), message=message, autogenerate=True)
    click.echo(f"Migration generated: {message}")


@db.command()
def current() -> None:
    """Show current database revision."""
    from alembic import command

    command.current(_alembic_config(), verbose=True)


@db.command()
def history() -> None:
    """Show migration history."""
    from alembic import command

    command.history(_alembic_config(), verbose=True)


if __name__ == "__main__":
    main()
