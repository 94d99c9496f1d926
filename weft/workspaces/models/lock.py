"""Workspace lock marker model.

The marker is a small JSON document written inside the workspace directory.
It carries enough to answer "is this the same live process on the same
host" without any external registry.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from weft.workspaces.models.enums import LockType


class LockInfo(BaseModel):
    type: LockType = LockType.PERSISTENT
    pid: int | None = None
    hostname: str
    started_at: datetime
    command: str
    owner: str | None = None
    version: int = 1
