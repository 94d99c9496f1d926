"""Jujutsu (jj) backend.

jj has no checked-out branch.  The "current bookmark" of a workspace is the
nearest bookmarked ancestor of the working-copy change, preferring anything
other than the trunk names.
"""

from __future__ import annotations

import re
from pathlib import Path

from weft.workspaces.models.enums import VcsKind
from weft.workspaces.vcs.base import run_command

TRUNK_NAMES = ("main", "master")

_CURRENT_BOOKMARK_REVSET = "latest(heads(ancestors(@) & bookmarks()), 1)"

_MISSING_BOOKMARK = re.compile(
    r"no such (?:remote )?bookmark|no matching (?:remote )?bookmarks?|bookmark .* not found"
    r"|could not resolve revision|revision .* doesn.t exist",
    re.IGNORECASE,
)


def jj(path: str | Path, *args: str, check: bool = True):  # noqa: ANN201
    return run_command(["jj", *args], path, check=check)


def is_missing_bookmark_error(message: str) -> bool:
    return bool(_MISSING_BOOKMARK.search(message))


def parse_bookmark_names(output: str) -> list[str]:
    """Bookmark names from ``jj bookmark list`` output.

    Lines look like ``name: qpvuntsm 230dd059 message``; tracked remote
    entries are indented (``  @origin: ...``) and skipped.
    """
    names: list[str] = []
    for line in output.splitlines():
        if not line.strip() or line[0].isspace():
            continue
        name = re.split(r"[\s:]", line, maxsplit=1)[0]
        if name and name not in names:
            names.append(name)
    return names


def parse_remote_list(output: str) -> dict[str, str]:
    """Map of remote name to URL from ``jj git remote list`` output."""
    remotes: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.strip().split(maxsplit=1)
        if len(parts) == 2:
            remotes[parts[0]] = parts[1]
    return remotes


class JjBackend:
    kind = VcsKind.JJ

    def current_branch(self, path: Path) -> str | None:
        proc = jj(
            path,
            "log",
            "-r",
            _CURRENT_BOOKMARK_REVSET,
            "--limit",
            "1",
            "--no-graph",
            "--ignore-working-copy",
            "-T",
            "bookmarks",
            check=False,
        )
        if proc.returncode != 0:
            return None
        candidates: list[str] = []
        for token in proc.stdout.split():
            name = token.rstrip("*")
            if "@" in name:
                continue
            if name and name not in candidates:
                candidates.append(name)
        if not candidates:
            return None
        preferred = [name for name in candidates if name not in TRUNK_NAMES]
        return (preferred or candidates)[0]

    def current_commit_hash(self, path: Path) -> str | None:
        proc = jj(
            path,
            "log",
            "-r",
            "@",
            "--no-graph",
            "--ignore-working-copy",
            "-T",
            "commit_id",
            check=False,
        )
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def has_uncommitted_changes(self, path: Path) -> bool:
        return bool(jj(path, "diff").stdout.strip())

    def remotes(self, path: Path) -> dict[str, str]:
        return parse_remote_list(jj(path, "git", "remote", "list").stdout)

    def has_remote(self, path: Path) -> bool | None:
        proc = jj(path, "git", "remote", "list", check=False)
        if proc.returncode != 0:
            return None
        return bool(parse_remote_list(proc.stdout))

    def fetch(self, path: Path, remote: str | None = None) -> None:
        if remote:
            jj(path, "git", "fetch", "--remote", remote)
        else:
            jj(path, "git", "fetch")

    def trunk_branch(self, path: Path) -> str:
        names = self.bookmarks(path)
        for name in TRUNK_NAMES:
            if name in names:
                return name
        return "main"

    def bookmarks(self, path: Path) -> list[str]:
        proc = jj(path, "bookmark", "list", check=False)
        if proc.returncode != 0:
            return []
        return parse_bookmark_names(proc.stdout)

    def checkout(self, path: Path, ref: str) -> None:
        jj(path, "edit", ref)

    def start_from(self, path: Path, base: str) -> None:
        jj(path, "new", base)

    def branch_exists(self, path: Path, name: str) -> bool:
        return name in self.bookmarks(path)

    def create_branch(self, path: Path, name: str, *, switch: bool = True) -> None:
        # Bookmarks are always set at the working-copy change.
        jj(path, "bookmark", "set", name)

    def delete_branch(self, path: Path, name: str) -> None:
        jj(path, "bookmark", "delete", name)
