"""Shared test fixtures: an isolated environment, a migrated SQLite database
and real temporary Git repositories.

Every test runs with its own ``WEFT_*`` environment pointing at a fresh
SQLite file under ``tmp_path``.  Tests that drive a real ``git`` binary are
marked with ``@pytest.mark.vcs`` and skipped when git is not installed.
"""

from __future__ import annotations

import contextlib
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from loguru import logger
from sqlalchemy.orm import Session

from weft.workspaces.db.engine import create_engine, create_session_factory
from weft.workspaces.lock import WorkspaceLock
from weft.workspaces.settings import _get_settings_cached

ALEMBIC_INI = Path(__file__).parent.parent / "weft" / "workspaces" / "alembic.ini"


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def weft_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    """Point weft at a per-test database and a clean environment."""
    url = f"sqlite:///{tmp_path / 'weft.db'}"
    monkeypatch.setenv("WEFT_DATABASE_URL", url)
    monkeypatch.setenv("WEFT_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("WEFT_CONFIG_FILE", str(tmp_path / "no-such-config.yml"))
    monkeypatch.setenv("USER", "alice")
    for key in ("WEFT_USER", "WEFT_LOG_LEVEL", "WEFT_ALLOW_OFFLINE", "WEFT_TASKS_DIR"):
        monkeypatch.delenv(key, raising=False)

    # Keep git away from the developer's own configuration.
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for key in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(key, "Test")
    for key in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(key, "test@example.com")

    _get_settings_cached.cache_clear()
    yield url
    _get_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _reset_global_state() -> Iterator[None]:
    """Undo process-wide state touched by the CLI and the lock manager."""
    yield
    WorkspaceLock._cleanup_targets.clear()
    logger.remove()
    logger.add(sys.stderr, level="WARNING")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def db_session(weft_env: str) -> Iterator[Session]:
    """Session on a fresh SQLite database migrated to head by alembic."""
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ALEMBIC_INI))
    cfg.attributes["configure_logger"] = False
    cfg.attributes["database_url"] = weft_env
    command.upgrade(cfg, "head")

    engine = create_engine(weft_env)
    with create_session_factory(engine)() as session:
        yield session
    engine.dispose()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Messages logged through loguru while the test runs."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    with contextlib.suppress(ValueError):
        logger.remove(handler_id)


# ---------------------------------------------------------------------------
# Git repositories
# ---------------------------------------------------------------------------


def run_git(path: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=path, text=True, capture_output=True, check=True)
    return proc.stdout.strip()


@pytest.fixture
def git_cmd() -> Callable[..., str]:
    """Run git and return its stripped stdout; skips when git is missing."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return run_git


PLAN_TEXT = """---
id: 7
uuid: 0b6f3c1e-7d52-4d2b-9a53-1f3e0f0c7a11
title: Add search
status: pending
issue:
  - https://example.com/issues/7
---
Index the documents and expose a search command.
"""


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Bare repository holding ``main`` with one commit and a plan."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    seed = tmp_path / "seed"
    seed.mkdir()
    run_git(seed, "init", "-b", "main")
    (seed / "README.md").write_text("# demo\n")
    (seed / "tasks").mkdir()
    (seed / "tasks" / "7-add-search.plan.md").write_text(PLAN_TEXT)
    run_git(seed, "add", ".")
    run_git(seed, "commit", "-m", "initial")

    origin = tmp_path / "origin.git"
    subprocess.run(["git", "clone", "--bare", str(seed), str(origin)], capture_output=True, check=True)
    return origin


@pytest.fixture
def clone_repo(tmp_path: Path, origin_repo: Path) -> Callable[[str], Path]:
    """Factory cloning the origin repository into ``tmp_path/<name>``."""

    def _clone(name: str) -> Path:
        target = tmp_path / name
        subprocess.run(["git", "clone", str(origin_repo), str(target)], capture_output=True, check=True)
        return target.resolve()

    return _clone


@pytest.fixture
def main_repo(clone_repo: Callable[[str], Path]) -> Path:
    """The main checkout, where the CLI runs and plans live."""
    return clone_repo("main")


@pytest.fixture
def fake_runner(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    """Replace the subprocess runner with a scripted one."""
    runner = FakeRunner()
    for module in (
        "weft.workspaces.vcs.jj",
        "weft.workspaces.vcs.git",
        "weft.workspaces.vcs.identity",
        "weft.workspaces.lifecycle",
    ):
        monkeypatch.setattr(f"{module}.run_command", runner)
    return runner


class FakeRunner:
    """Records commands and answers them from ``(prefix, result)`` rules.

    The first rule whose prefix matches the start of the command wins;
    unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.rules: list[tuple[list[str], int, str, str]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.rules.append((list(prefix), returncode, stdout, stderr))

    def commands(self, program: str = "jj") -> list[str]:
        return [" ".join(call[1:]) for call in self.calls if call[0] == program]

    def __call__(
        self,
        args: list[str],
        cwd: str | Path,
        *,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        from weft.workspaces.vcs.base import VcsCommandError

        self.calls.append(list(args))
        returncode, stdout, stderr = 0, "", ""
        for prefix, rc, out, err in self.rules:
            if args[: len(prefix)] == prefix:
                returncode, stdout, stderr = rc, out, err
                break
        if check and returncode != 0:
            raise VcsCommandError(args, cwd=cwd, returncode=returncode, stdout=stdout, stderr=stderr)
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)
