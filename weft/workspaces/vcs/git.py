"""Git backend."""

from __future__ import annotations

from pathlib import Path

from weft.workspaces.models.enums import VcsKind
from weft.workspaces.vcs.base import run_command


def git(path: str | Path, *args: str, check: bool = True):  # noqa: ANN201
    return run_command(["git", *args], path, check=check)


class GitBackend:
    kind = VcsKind.GIT

    def current_branch(self, path: Path) -> str | None:
        proc = git(path, "branch", "--show-current", check=False)
        branch = proc.stdout.strip()
        if proc.returncode != 0 or not branch:
            return None
        return branch

    def current_commit_hash(self, path: Path) -> str | None:
        proc = git(path, "rev-parse", "HEAD", check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def has_uncommitted_changes(self, path: Path) -> bool:
        return bool(git(path, "status", "--porcelain").stdout.strip())

    def has_remote(self, path: Path) -> bool | None:
        proc = git(path, "remote", "get-url", "origin", check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())

    def remote_url(self, path: Path, remote: str = "origin") -> str | None:
        proc = git(path, "remote", "get-url", remote, check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def fetch(self, path: Path, remote: str | None = None) -> None:
        git(path, "fetch", remote or "origin")

    def trunk_branch(self, path: Path) -> str:
        proc = git(path, "branch", "--list", "main", "master", check=False)
        names = [line.strip().lstrip("*").strip() for line in proc.stdout.splitlines() if line.strip()]
        if "main" in names:
            return "main"
        if "master" in names:
            return "master"
        return "main"

    def checkout(self, path: Path, ref: str) -> None:
        git(path, "checkout", ref)

    def start_from(self, path: Path, base: str) -> None:
        git(path, "checkout", base)

    def branch_exists(self, path: Path, name: str) -> bool:
        return git(path, "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).returncode == 0

    def ref_exists(self, path: Path, ref: str) -> bool:
        return git(path, "rev-parse", "--verify", "--quiet", ref, check=False).returncode == 0

    def create_branch(self, path: Path, name: str, *, switch: bool = True) -> None:
        if switch:
            git(path, "checkout", "-b", name)
        else:
            git(path, "branch", name, "HEAD")

    def delete_branch(self, path: Path, name: str) -> None:
        git(path, "branch", "-D", name)
