"""Plan file model.

Plans are markdown files with a YAML front matter block.  Only the fields
the workspace core reads are declared; anything else in the front matter is
kept as-is when the plan is written back.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from weft.workspaces.models.enums import PlanStatus


class Plan(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    uuid: str | None = None
    title: str | None = None
    goal: str | None = None
    status: PlanStatus = PlanStatus.PENDING
    branch: str | None = None
    issue: list[str] = Field(default_factory=list)

    details: str = Field(default="", exclude=True)
    """Markdown body after the front matter."""

    filename: Path | None = Field(default=None, exclude=True)

    @property
    def label(self) -> str:
        """Numeric id when present, otherwise the uuid."""
        if self.id is not None:
            return str(self.id)
        return self.uuid or "unknown"

    @property
    def display_title(self) -> str:
        return self.title or self.goal or ""
