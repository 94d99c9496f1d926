"""Filesystem workspace locks.

A lock is a JSON marker file inside the workspace directory::

    {workspace}/.jj/weft.lock      jj checkouts
    {workspace}/.git/weft.lock     git checkouts
    {workspace}/.weft.lock         anything else (e.g. git worktrees)

Keeping the marker inside the VCS metadata directory keeps it out of
``git status`` / ``jj diff``.

Creation is atomic: the payload is written to a private temporary file and
hard-linked into place, so the marker appears fully written and exactly one
of several racing acquirers wins.  The lock lives entirely on disk and does
not depend on the metadata database being reachable.

``pid`` locks belong to a running process.  When that process dies on this
host the lock is stale and the next reader removes it.  A pid lock recorded
on another host is reported stale but is only removed by an explicit
:meth:`WorkspaceLock.clear_stale`.  ``persistent`` locks are never stale.
"""

from __future__ import annotations

import atexit
import contextlib
import json
import os
import secrets
import signal
import socket
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import ClassVar

from loguru import logger
from pydantic import ValidationError

from weft.workspaces.models.enums import LockType
from weft.workspaces.models.lock import LockInfo

LOCK_FILE_NAME = "weft.lock"
LOCK_VERSION = 1


class AlreadyLockedError(RuntimeError):
    """Raised when a workspace holds a live lock."""

    def __init__(self, workspace: Path, info: LockInfo | None) -> None:
        self.workspace = workspace
        self.info = info
        msg = f"Workspace already locked: {workspace}"
        if info is not None:
            msg += f" ({describe_lock(info)})"
        super().__init__(msg)


def describe_lock(info: LockInfo) -> str:
    holder = f"pid {info.pid}" if info.type == LockType.PID else "persistent"
    parts = [f"{holder} on {info.hostname}", f"since {info.started_at:%Y-%m-%d %H:%M:%S}"]
    if info.owner:
        parts.append(f"owner {info.owner}")
    parts.append(f"command: {info.command}")
    return ", ".join(parts)


def lock_file_path(workspace: str | Path) -> Path:
    root = Path(workspace)
    if (root / ".jj").is_dir():
        return root / ".jj" / LOCK_FILE_NAME
    if (root / ".git").is_dir():
        return root / ".git" / LOCK_FILE_NAME
    return root / f".{LOCK_FILE_NAME}"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def build_command_label(command: str, owner: str | None = None) -> str:
    if owner:
        return f"{command} (owner: {owner})"
    return command


class WorkspaceLock:
    """Acquire, inspect and release workspace locks for one process identity.

    *pid* and *hostname* default to the current process; tests pass other
    values to simulate foreign holders.
    """

    # Workspaces whose pid locks are released on exit, and the manager that owns each.
    _cleanup_targets: ClassVar[dict[Path, WorkspaceLock]] = {}
    _handlers_installed: ClassVar[bool] = False
    _previous_signal_handlers: ClassVar[dict[int, object]] = {}

    def __init__(self, *, pid: int | None = None, hostname: str | None = None) -> None:
        self.pid = pid if pid is not None else os.getpid()
        self.hostname = hostname or socket.gethostname()

    # -- Acquire ---------------------------------------------------------------

    def acquire(
        self,
        workspace: str | Path,
        command: str,
        *,
        owner: str | None = None,
        lock_type: LockType = LockType.PERSISTENT,
    ) -> LockInfo:
        """Create the lock marker.  Raises ``AlreadyLockedError`` if a live lock exists.

        A same-host pid lock whose process has exited is removed and the
        acquisition retried once.
        """
        root = Path(workspace)
        info = LockInfo(
            type=lock_type,
            pid=self.pid if lock_type == LockType.PID else None,
            hostname=self.hostname,
            started_at=datetime.now(UTC),
            command=build_command_label(command, owner),
            owner=owner,
            version=LOCK_VERSION,
        )
        path = lock_file_path(root)

        for _attempt in range(2):
            try:
                _create_exclusive(path, info.model_dump_json(indent=2))
            except FileExistsError:
                existing = self._read(path)
                if existing is not None and self._reclaimable(existing) and self._remove_if_unchanged(path, existing):
                    logger.info("Removed stale lock on {} ({})", root, describe_lock(existing))
                    continue
                raise AlreadyLockedError(root, existing) from None
            logger.debug("Acquired {} lock on {}", lock_type, root)
            return info

        raise AlreadyLockedError(root, self._read(path))

    # -- Release ---------------------------------------------------------------

    def release(self, workspace: str | Path, *, force: bool = False) -> bool:
        """Remove the lock marker.  Returns False if there was none.

        No ownership check happens here: without *force* the caller has
        already established that the lock is its own.
        """
        root = Path(workspace)
        path = lock_file_path(root)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        finally:
            self._cleanup_targets.pop(root.resolve(), None)
        logger.debug("Released lock on {}{}", root, " (forced)" if force else "")
        return True

    # -- Inspect ---------------------------------------------------------------

    def get_lock_info(self, workspace: str | Path) -> LockInfo | None:
        """Return the current lock, or None.

        A same-host pid lock whose process is gone is removed on the way.
        """
        path = lock_file_path(workspace)
        info = self._read(path)
        if info is None:
            return None
        if self._reclaimable(info) and self._remove_if_unchanged(path, info):
            logger.debug("Cleared stale lock on {}", workspace)
            return None
        return info

    def is_locked(self, workspace: str | Path) -> bool:
        return self.get_lock_info(workspace) is not None

    def is_stale(self, info: LockInfo) -> bool:
        if info.type == LockType.PERSISTENT:
            return False
        if info.hostname != self.hostname:
            return True
        if info.pid is None:
            return True
        return not pid_alive(info.pid)

    def clear_stale(self, workspace: str | Path) -> bool:
        """Remove the lock if it is stale, including pid locks from other hosts."""
        path = lock_file_path(workspace)
        info = self._read(path)
        if info is None or not self.is_stale(info):
            return False
        removed = self._remove_if_unchanged(path, info)
        if removed:
            logger.info("Cleared stale lock on {} ({})", workspace, describe_lock(info))
        return removed

    # -- Exit cleanup ----------------------------------------------------------

    def setup_cleanup_handlers(self, workspace: str | Path, lock_type: LockType) -> None:
        """Release this process's pid lock on *workspace* at exit or on SIGINT/SIGTERM/SIGHUP.

        Registration is idempotent per workspace.  Persistent locks are left alone.
        """
        if lock_type != LockType.PID:
            return
        self._cleanup_targets[Path(workspace).resolve()] = self
        self._install_handlers()

    def release_owned_locks(self) -> list[Path]:
        """Release every registered pid lock still held by this process."""
        released: list[Path] = []
        for root, manager in list(self._cleanup_targets.items()):
            if manager is not self:
                continue
            info = self._read(lock_file_path(root))
            if (
                info is not None
                and info.type == LockType.PID
                and info.pid == self.pid
                and info.hostname == self.hostname
                and self.release(root)
            ):
                released.append(root)
            self._cleanup_targets.pop(root, None)
        return released

    @classmethod
    def _run_exit_cleanup(cls) -> None:
        for manager in {id(m): m for m in cls._cleanup_targets.values()}.values():
            with contextlib.suppress(OSError):
                manager.release_owned_locks()

    @classmethod
    def _handle_signal(cls, signum: int, frame: object) -> None:
        cls._run_exit_cleanup()
        previous = cls._previous_signal_handlers.get(signum)
        if previous == signal.SIG_IGN:
            return
        if callable(previous):
            previous(signum, frame)
            return
        raise SystemExit(128 + signum)

    @classmethod
    def _install_handlers(cls) -> None:
        if cls._handlers_installed:
            return
        cls._handlers_installed = True
        atexit.register(cls._run_exit_cleanup)
        if threading.current_thread() is not threading.main_thread():
            return
        for name in ("SIGINT", "SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            cls._previous_signal_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, cls._handle_signal)

    # -- Helpers ---------------------------------------------------------------

    def _reclaimable(self, info: LockInfo) -> bool:
        """Stale by process death on this host.  Foreign-host locks never qualify."""
        return info.type == LockType.PID and info.hostname == self.hostname and self.is_stale(info)

    @staticmethod
    def _read(path: Path) -> LockInfo | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockInfo.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("Unreadable lock file {}; treating it as a persistent lock", path)
            return LockInfo(
                type=LockType.PERSISTENT,
                hostname="unknown",
                started_at=datetime.fromtimestamp(0, UTC),
                command="unknown (unreadable lock file)",
            )

    def _remove_if_unchanged(self, path: Path, expected: LockInfo) -> bool:
        current = self._read(path)
        if current != expected:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def _create_exclusive(path: Path, data: str) -> None:
    """Write *data* to *path*, failing with ``FileExistsError`` if it exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{secrets.token_hex(4)}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.link(tmp, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()

