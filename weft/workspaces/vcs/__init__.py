"""Version-control adapters.

Which backend a workspace uses is decided at every touchpoint by
:func:`using_jj`, a filesystem check, so colocated jj+git checkouts are
driven through jj.
"""

from __future__ import annotations

from pathlib import Path

from weft.workspaces.vcs.base import VcsBackend, VcsCommandError, error_text, run_command
from weft.workspaces.vcs.git import GitBackend
from weft.workspaces.vcs.jj import JjBackend


def using_jj(path: str | Path) -> bool:
    return (Path(path) / ".jj").is_dir()


def get_backend(path: str | Path) -> VcsBackend:
    if using_jj(path):
        return JjBackend()
    return GitBackend()


__all__ = [
    "GitBackend",
    "JjBackend",
    "VcsBackend",
    "VcsCommandError",
    "error_text",
    "get_backend",
    "run_command",
    "using_jj",
]
