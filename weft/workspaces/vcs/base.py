"""Subprocess plumbing and the backend interface shared by Git and jj.

Every VCS touchpoint goes through :func:`run_command`, so failures always
carry the literal command line and its stderr.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger

from weft.workspaces.models.enums import VcsKind


class VcsCommandError(RuntimeError):
    """A VCS subprocess exited non-zero."""

    def __init__(
        self,
        command: list[str],
        *,
        cwd: str | Path | None,
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = command
        self.cwd = str(cwd) if cwd is not None else None
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self._format())

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def _format(self) -> str:
        lines = [f"Command failed ({self.returncode}): {self.command_line}"]
        if self.cwd:
            lines.append(f"cwd: {self.cwd}")
        if self.stdout.strip():
            lines.append(f"stdout:\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            lines.append(f"stderr:\n{self.stderr.rstrip()}")
        return "\n".join(lines)


def run_command(
    args: list[str],
    cwd: str | Path,
    *,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* in *cwd* and capture text output.

    Raises ``VcsCommandError`` when the command fails and *check* is set.
    A missing executable is reported the same way (exit code 127).
    """
    logger.debug("$ {} (cwd={})", shlex.join(args), cwd)
    full_env = None
    if env:
        full_env = {**os.environ, **env}
    try:
        proc = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            text=True,
            capture_output=True,
            env=full_env,
            check=False,
        )
    except FileNotFoundError as exc:
        if check:
            raise VcsCommandError(args, cwd=cwd, returncode=127, stdout="", stderr=str(exc)) from exc
        return subprocess.CompletedProcess(args, 127, "", str(exc))

    if check and proc.returncode != 0:
        raise VcsCommandError(
            args,
            cwd=cwd,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
    return proc


def error_text(exc: BaseException) -> str:
    """Best human-readable detail for a failure: stderr when available."""
    if isinstance(exc, VcsCommandError):
        return (exc.stderr or exc.stdout).strip() or str(exc)
    return str(exc)


@runtime_checkable
class VcsBackend(Protocol):
    """Operations the workspace core needs from a version-control backend.

    ``checkout`` moves the working copy onto an existing ref in place;
    ``start_from`` begins new work on top of *base* (for Git the two are the
    same, jj creates a fresh change).
    """

    kind: VcsKind

    def current_branch(self, path: Path) -> str | None: ...

    def current_commit_hash(self, path: Path) -> str | None: ...

    def has_uncommitted_changes(self, path: Path) -> bool: ...

    def has_remote(self, path: Path) -> bool | None: ...

    def fetch(self, path: Path, remote: str | None = None) -> None: ...

    def trunk_branch(self, path: Path) -> str: ...

    def checkout(self, path: Path, ref: str) -> None: ...

    def start_from(self, path: Path, base: str) -> None: ...

    def branch_exists(self, path: Path, name: str) -> bool: ...

    def create_branch(self, path: Path, name: str, *, switch: bool = True) -> None: ...

    def delete_branch(self, path: Path, name: str) -> None: ...
