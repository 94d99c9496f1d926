"""Repository and user identity.

Every workspace cloned from the same upstream shares one repository id,
derived from the normalized ``origin`` URL.  Checkouts without a remote fall
back to ``local/<directory name>``.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from weft.workspaces.vcs.base import run_command
from weft.workspaces.vcs.jj import parse_remote_list

_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>[^/].*)$")


@dataclass(frozen=True)
class RepositoryIdentity:
    repository_id: str
    remote_url: str | None
    git_root: Path


def find_repository_root(start: str | Path) -> Path | None:
    """Nearest directory at or above *start* containing ``.jj`` or ``.git``."""
    current = Path(start).expanduser().resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".jj").is_dir() or (candidate / ".git").exists():
            return candidate
    return None


def normalize_remote_url(url: str) -> str:
    """Reduce a remote URL to ``host/owner/repo`` so equivalent remotes compare equal.

    >>> normalize_remote_url("git@github.com:acme/tasks.git")
    'github.com/acme/tasks'
    >>> normalize_remote_url("https://user@github.com/acme/tasks")
    'github.com/acme/tasks'
    """
    url = url.strip()
    if "://" in url:
        parts = urlsplit(url)
        if parts.scheme == "file":
            return _strip_git_suffix(str(Path(parts.path).resolve()))
        host = parts.hostname or ""
        path = parts.path
    else:
        match = _SCP_LIKE.match(url)
        if match is None or os.path.isabs(url) or url.startswith("."):
            return _strip_git_suffix(str(Path(url).expanduser().resolve()))
        host = match.group("host")
        path = match.group("path")

    path = _strip_git_suffix(path.strip("/"))
    return f"{host.lower()}/{path}" if host else path


def _strip_git_suffix(value: str) -> str:
    value = value.rstrip("/")
    return value[:-4] if value.endswith(".git") else value


def get_remote_url(root: Path) -> str | None:
    if (root / ".jj").is_dir():
        proc = run_command(["jj", "git", "remote", "list"], root, check=False)
        if proc.returncode == 0:
            remotes = parse_remote_list(proc.stdout)
            if "origin" in remotes:
                return remotes["origin"]
            if remotes:
                return next(iter(remotes.values()))
    proc = run_command(["git", "remote", "get-url", "origin"], root, check=False)
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def get_repository_identity(cwd: str | Path | None = None) -> RepositoryIdentity:
    """Identify the repository containing *cwd* (default: the current directory)."""
    start = Path(cwd) if cwd is not None else Path.cwd()
    root = find_repository_root(start) or start.expanduser().resolve()
    remote_url = get_remote_url(root)
    if remote_url:
        repository_id = normalize_remote_url(remote_url)
    else:
        repository_id = f"local/{root.name}"
    return RepositoryIdentity(repository_id=repository_id, remote_url=remote_url, git_root=root)


def get_user_identity(override: str | None = None) -> str | None:
    """Current user name, or None when it cannot be determined."""
    if override:
        return override
    for key in ("USER", "LOGNAME", "USERNAME"):
        value = os.environ.get(key, "").strip()
        if value:
            return value
    return None
