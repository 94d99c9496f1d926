"""Run configured workspace commands (post-clone setup and reuse updates)."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from loguru import logger

from weft.workspaces.settings import WorkspaceCommand

TASK_ID_ENV = "WEFT_TASK_ID"
PLAN_FILE_ENV = "WEFT_PLAN_FILE_PATH"


class WorkspaceCommandError(RuntimeError):
    """A configured command exited non-zero and was not allowed to fail."""

    def __init__(self, title: str, returncode: int, output: str) -> None:
        self.title = title
        self.returncode = returncode
        self.output = output
        msg = f"Command {title!r} failed with exit code {returncode}"
        if output.strip():
            msg += f":\n{output.rstrip()}"
        super().__init__(msg)


def command_env(task_id: str | None, plan_file: Path | None) -> dict[str, str]:
    env: dict[str, str] = {}
    if task_id:
        env[TASK_ID_ENV] = task_id
    if plan_file is not None:
        env[PLAN_FILE_ENV] = str(plan_file)
    return env


def run_workspace_commands(
    commands: list[WorkspaceCommand],
    workspace: Path,
    *,
    env: dict[str, str] | None = None,
) -> None:
    """Run *commands* in order inside *workspace*.

    Raises ``WorkspaceCommandError`` on the first failure not marked
    ``allow_failure``.
    """
    for cmd in commands:
        title = cmd.title or cmd.command
        cwd = workspace / cmd.working_directory if cmd.working_directory else workspace
        logger.info("Running: {}", title)
        try:
            proc = subprocess.run(  # noqa: S602
                cmd.command,
                shell=True,
                cwd=cwd,
                env={**os.environ, **(env or {}), **cmd.env},
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            # Missing working directory or shell.
            if cmd.allow_failure:
                logger.warning("Command {!r} could not be started (allowed): {}", title, exc)
                continue
            raise WorkspaceCommandError(title, 127, str(exc)) from exc
        output = (proc.stdout + proc.stderr).strip()
        if proc.returncode == 0:
            if output:
                logger.debug("{} output:\n{}", title, output)
            continue
        if cmd.allow_failure:
            logger.warning("Command {!r} failed with exit code {} (allowed)", title, proc.returncode)
            if output:
                logger.warning(output)
            continue
        raise WorkspaceCommandError(title, proc.returncode, output)
