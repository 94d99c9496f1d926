"""Tests for filesystem workspace locks."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

from weft.workspaces import lock as lock_module
from weft.workspaces.lock import (
    AlreadyLockedError,
    WorkspaceLock,
    build_command_label,
    lock_file_path,
    pid_alive,
)
from weft.workspaces.models.enums import LockType


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    (ws / ".git").mkdir(parents=True)
    return ws


def _dead_pids(monkeypatch: pytest.MonkeyPatch, *dead: int) -> None:
    monkeypatch.setattr(lock_module, "pid_alive", lambda pid: pid not in dead)


# ---------------------------------------------------------------------------
# Marker location and content
# ---------------------------------------------------------------------------


def test_lock_file_lives_in_vcs_directory(tmp_path: Path) -> None:
    git_ws = tmp_path / "git"
    (git_ws / ".git").mkdir(parents=True)
    jj_ws = tmp_path / "jj"
    (jj_ws / ".jj").mkdir(parents=True)
    (jj_ws / ".git").mkdir()
    plain = tmp_path / "plain"
    plain.mkdir()

    assert lock_file_path(git_ws) == git_ws / ".git" / "weft.lock"
    assert lock_file_path(jj_ws) == jj_ws / ".jj" / "weft.lock"
    assert lock_file_path(plain) == plain / ".weft.lock"


def test_acquire_writes_marker(workspace: Path) -> None:
    manager = WorkspaceLock(pid=4242, hostname="box")
    info = manager.acquire(workspace, "weft workspace lock", owner="alice")

    data = json.loads(lock_file_path(workspace).read_text())
    assert data["type"] == "persistent"
    assert data["pid"] is None
    assert data["hostname"] == "box"
    assert data["command"] == "weft workspace lock (owner: alice)"
    assert data["owner"] == "alice"
    assert info.command == data["command"]


def test_pid_lock_records_pid(workspace: Path) -> None:
    info = WorkspaceLock(pid=4242, hostname="box").acquire(workspace, "run", lock_type=LockType.PID)
    assert info.type == LockType.PID
    assert info.pid == 4242


def test_build_command_label() -> None:
    assert build_command_label("weft workspace add") == "weft workspace add"
    assert build_command_label("weft workspace add", "bob") == "weft workspace add (owner: bob)"


def test_pid_alive_for_current_process() -> None:
    assert pid_alive(os.getpid())
    assert not pid_alive(0)


# ---------------------------------------------------------------------------
# Mutual exclusion and staleness
# ---------------------------------------------------------------------------


def test_second_acquire_fails(workspace: Path) -> None:
    WorkspaceLock(hostname="box").acquire(workspace, "first")

    with pytest.raises(AlreadyLockedError) as exc_info:
        WorkspaceLock(hostname="box").acquire(workspace, "second")

    assert exc_info.value.info is not None
    assert exc_info.value.info.command == "first"
    assert str(exc_info.value).startswith(f"Workspace already locked: {workspace}")


RACE_SCRIPT = """
import pathlib, sys, time
from weft.workspaces.lock import AlreadyLockedError, WorkspaceLock

workspace, go = map(pathlib.Path, sys.argv[1:3])
deadline = time.monotonic() + 30
while not go.exists() and time.monotonic() < deadline:
    time.sleep(0.001)
try:
    WorkspaceLock().acquire(workspace, f"racer {sys.argv[3]}")
except AlreadyLockedError:
    sys.exit(3)
"""


def test_concurrent_acquirers_have_one_winner(workspace: Path, tmp_path: Path) -> None:
    go = tmp_path / "go"
    env = {**os.environ, "PYTHONPATH": os.pathsep.join([str(Path(__file__).parents[2]), *sys.path])}
    racers = [
        subprocess.Popen([sys.executable, "-c", RACE_SCRIPT, str(workspace), str(go), str(i)], env=env)
        for i in range(8)
    ]
    go.touch()
    codes = [racer.wait(timeout=60) for racer in racers]

    assert sorted(codes) == [0] + [3] * 7
    winner = codes.index(0)
    assert WorkspaceLock().get_lock_info(workspace).command == f"racer {winner}"


def test_persistent_lock_is_never_stale(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _dead_pids(monkeypatch, 4242)
    manager = WorkspaceLock(pid=4242, hostname="box")
    info = manager.acquire(workspace, "keep")

    assert not manager.is_stale(info)
    assert not manager.clear_stale(workspace)
    assert manager.is_locked(workspace)


def test_dead_pid_lock_is_reclaimed_on_read(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _dead_pids(monkeypatch, 4242)
    WorkspaceLock(pid=4242, hostname="box").acquire(workspace, "crashed", lock_type=LockType.PID)

    assert WorkspaceLock(pid=1, hostname="box").get_lock_info(workspace) is None
    assert not lock_file_path(workspace).exists()


def test_dead_pid_lock_is_replaced_on_acquire(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _dead_pids(monkeypatch, 4242)
    WorkspaceLock(pid=4242, hostname="box").acquire(workspace, "crashed", lock_type=LockType.PID)

    info = WorkspaceLock(pid=5151, hostname="box").acquire(workspace, "new", lock_type=LockType.PID)

    assert info.pid == 5151
    assert WorkspaceLock(hostname="box").get_lock_info(workspace) == info


def test_live_pid_lock_blocks(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _dead_pids(monkeypatch)
    WorkspaceLock(pid=4242, hostname="box").acquire(workspace, "busy", lock_type=LockType.PID)

    with pytest.raises(AlreadyLockedError):
        WorkspaceLock(pid=5151, hostname="box").acquire(workspace, "other")


def test_foreign_host_pid_lock_is_stale_but_not_reclaimed_implicitly(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _dead_pids(monkeypatch)
    WorkspaceLock(pid=4242, hostname="elsewhere").acquire(workspace, "remote", lock_type=LockType.PID)
    local = WorkspaceLock(pid=1, hostname="box")

    info = local.get_lock_info(workspace)
    assert info is not None
    assert local.is_stale(info)
    with pytest.raises(AlreadyLockedError):
        local.acquire(workspace, "mine")

    assert local.clear_stale(workspace)
    assert local.get_lock_info(workspace) is None


def test_unreadable_lock_is_treated_as_persistent(workspace: Path, log_messages: list[str]) -> None:
    path = lock_file_path(workspace)
    path.write_text("{not json")

    manager = WorkspaceLock(hostname="box")
    info = manager.get_lock_info(workspace)

    assert info is not None
    assert info.type == LockType.PERSISTENT
    assert not manager.clear_stale(workspace)
    assert path.exists()
    assert any("Unreadable lock file" in m for m in log_messages)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


def test_release_removes_marker(workspace: Path) -> None:
    manager = WorkspaceLock(hostname="box")
    manager.acquire(workspace, "cmd")

    assert manager.release(workspace)
    assert not manager.is_locked(workspace)
    assert not manager.release(workspace)


def test_force_release_of_foreign_lock(workspace: Path) -> None:
    WorkspaceLock(pid=4242, hostname="elsewhere").acquire(workspace, "someone else")

    assert WorkspaceLock(hostname="box").release(workspace, force=True)
    assert not lock_file_path(workspace).exists()


# ---------------------------------------------------------------------------
# Exit cleanup
# ---------------------------------------------------------------------------


def test_cleanup_releases_only_own_pid_locks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(WorkspaceLock, "_handlers_installed", True)
    mine = tmp_path / "mine"
    persistent = tmp_path / "persistent"
    taken_over = tmp_path / "taken-over"
    for ws in (mine, persistent, taken_over):
        (ws / ".git").mkdir(parents=True)

    manager = WorkspaceLock(pid=4242, hostname="box")
    info = manager.acquire(mine, "run", lock_type=LockType.PID)
    manager.setup_cleanup_handlers(mine, info.type)

    info = manager.acquire(persistent, "keep")
    manager.setup_cleanup_handlers(persistent, info.type)

    manager.acquire(taken_over, "run", lock_type=LockType.PID)
    manager.setup_cleanup_handlers(taken_over, LockType.PID)
    manager.release(taken_over)
    WorkspaceLock(pid=5151, hostname="box").acquire(taken_over, "other", lock_type=LockType.PID)
    WorkspaceLock._cleanup_targets[taken_over.resolve()] = manager

    released = manager.release_owned_locks()

    assert released == [mine.resolve()]
    assert not lock_file_path(mine).exists()
    assert lock_file_path(persistent).exists()
    assert lock_file_path(taken_over).exists()
    assert WorkspaceLock._cleanup_targets == {}


def test_signal_handler_releases_and_chains(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    installed: dict[int, object] = {}
    registered: list[object] = []
    monkeypatch.setattr(WorkspaceLock, "_handlers_installed", False)
    monkeypatch.setattr(WorkspaceLock, "_previous_signal_handlers", {})
    monkeypatch.setattr(lock_module.atexit, "register", registered.append)
    monkeypatch.setattr(lock_module.signal, "signal", lambda signum, handler: installed.setdefault(signum, handler))

    previous_calls: list[int] = []
    monkeypatch.setattr(
        lock_module.signal,
        "getsignal",
        lambda signum: (lambda s, f: previous_calls.append(s)) if signum == signal.SIGTERM else signal.SIG_IGN,
    )

    ws = tmp_path / "ws"
    (ws / ".git").mkdir(parents=True)
    manager = WorkspaceLock(hostname="box")
    info = manager.acquire(ws, "run", lock_type=LockType.PID)
    manager.setup_cleanup_handlers(ws, info.type)
    manager.setup_cleanup_handlers(ws, info.type)

    assert len(registered) == 1
    assert signal.SIGTERM in installed

    WorkspaceLock._handle_signal(signal.SIGTERM, None)

    assert not lock_file_path(ws).exists()
    assert previous_calls == [signal.SIGTERM]


def test_persistent_locks_are_not_registered(workspace: Path) -> None:
    manager = WorkspaceLock(hostname="box")
    manager.setup_cleanup_handlers(workspace, LockType.PERSISTENT)
    assert WorkspaceLock._cleanup_targets == {}
