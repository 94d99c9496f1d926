"""Plan file store.

Plans are markdown files with YAML front matter::

    ---
    id: 12
    uuid: 4f1c...
    title: Add search
    status: pending
    ---
    Free-form details.

Plans are looked up under the tasks directory by path, file name, numeric id
or uuid.  Writes are atomic so a crashed status update never truncates a
plan.
"""

from __future__ import annotations

import contextlib
import os
import re
import tempfile
from pathlib import Path

import yaml
from pydantic import ValidationError

from weft.workspaces.models.enums import PlanStatus
from weft.workspaces.models.plan import Plan

PLAN_SUFFIXES = (".plan.md", ".md", ".yml", ".yaml")

_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(?P<meta>.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(?P<body>.*)\Z", re.DOTALL)


class PlanNotFoundError(LookupError):
    """Raised when a plan identifier does not match any plan file."""


class PlanFileError(ValueError):
    """Raised when a plan file cannot be parsed."""


# -- Read / write --------------------------------------------------------------


def read_plan(path: str | Path) -> Plan:
    path = Path(path)
    text = path.read_text(encoding="utf-8")

    match = _FRONT_MATTER.match(text)
    if match is not None:
        meta_text, body = match.group("meta"), match.group("body")
    elif path.suffix in (".yml", ".yaml"):
        meta_text, body = text, ""
    else:
        msg = f"{path}: missing YAML front matter"
        raise PlanFileError(msg)

    try:
        meta = yaml.safe_load(meta_text) or {}
    except yaml.YAMLError as exc:
        msg = f"{path}: invalid YAML front matter: {exc}"
        raise PlanFileError(msg) from None
    if not isinstance(meta, dict):
        msg = f"{path}: front matter must be a mapping"
        raise PlanFileError(msg)

    if "details" in meta and not body.strip():
        body = str(meta.pop("details") or "")
    else:
        meta.pop("details", None)

    try:
        plan = Plan.model_validate(meta)
    except ValidationError as exc:
        msg = f"{path}: {exc}"
        raise PlanFileError(msg) from None
    plan.details = body
    plan.filename = path
    return plan


def write_plan(path: str | Path, plan: Plan) -> None:
    path = Path(path)
    meta = plan.model_dump(mode="json", exclude_none=True)
    if not meta.get("issue"):
        meta.pop("issue", None)
    front = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).rstrip("\n")
    body = plan.details
    if body and not body.endswith("\n"):
        body += "\n"
    _atomic_write(path, f"---\n{front}\n---\n{body}")


def set_plan_status(path: str | Path, status: PlanStatus) -> Plan:
    """Rewrite the plan's status on disk and return the updated plan."""
    plan = read_plan(path)
    plan.status = status
    write_plan(path, plan)
    return plan


# -- Lookup --------------------------------------------------------------------


def iter_plan_files(tasks_dir: Path) -> list[Path]:
    if not tasks_dir.is_dir():
        return []
    return sorted(p for p in tasks_dir.rglob("*") if p.is_file() and p.name.endswith(PLAN_SUFFIXES))


def resolve_plan_file(identifier: str, tasks_dir: str | Path) -> Path:
    """Find the plan file for *identifier*.

    Tried in order: a path (absolute or relative to the current directory),
    a path relative to *tasks_dir*, a numeric plan id, a plan uuid.
    """
    tasks_dir = Path(tasks_dir)
    direct = Path(identifier).expanduser()
    for candidate in (direct, tasks_dir / identifier):
        if candidate.is_file():
            return candidate.resolve()

    numeric = int(identifier) if identifier.isdigit() else None
    for path in iter_plan_files(tasks_dir):
        try:
            plan = read_plan(path)
        except (PlanFileError, OSError):
            continue
        if numeric is not None and plan.id == numeric:
            return path.resolve()
        if plan.uuid and plan.uuid == identifier:
            return path.resolve()

    msg = f"No plan found for {identifier!r} in {tasks_dir}"
    raise PlanNotFoundError(msg)


def generate_branch_name(plan: Plan) -> str | None:
    """Default branch for a plan: ``task-<id>``, else a slug of its title."""
    if plan.id is not None:
        return f"task-{plan.id}"
    slug = re.sub(r"[^a-z0-9]+", "-", plan.display_title.lower()).strip("-")[:50].rstrip("-")
    return slug or None


# -- Helpers -------------------------------------------------------------------


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
