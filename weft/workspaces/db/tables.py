"""SQLAlchemy ORM models for the workspace metadata store.

These are the single source of truth for the database schema.  Alembic reads
``Base.metadata`` to autogenerate migration scripts.

Uses SQLAlchemy 2.0 declarative style with ``Mapped`` type annotations.
Lock state is deliberately absent: locks live in the workspace directories.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Text, UniqueConstraint, false, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Timezone-aware timestamp type for all datetime columns.
TimestampTZ = DateTime(timezone=True)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base with naming convention for constraints."""

    pass


# Apply naming convention to the metadata for deterministic constraint names.
Base.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Project(Base):
    __tablename__ = "project"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[str] = mapped_column(unique=True)
    remote_url: Mapped[str | None]
    last_git_root: Mapped[str | None]
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        TimestampTZ, default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class Workspace(Base):
    __tablename__ = "workspace"
    __table_args__ = (
        Index("ix_workspace_project_id", "project_id"),
        Index("ix_workspace_task_id", "task_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("project.id", ondelete="CASCADE"))
    path: Mapped[str] = mapped_column(unique=True)
    task_id: Mapped[str]
    branch: Mapped[str | None]
    name: Mapped[str | None]
    description: Mapped[str | None] = mapped_column(Text)
    plan_id: Mapped[str | None]
    plan_title: Mapped[str | None]
    is_primary: Mapped[bool] = mapped_column(default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        TimestampTZ, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    project: Mapped[Project] = relationship(lazy="joined")
    issues: Mapped[list[WorkspaceIssue]] = relationship(
        cascade="all, delete-orphan",
        order_by="WorkspaceIssue.id",
        lazy="selectin",
    )

    @property
    def issue_urls(self) -> list[str]:
        return [issue.url for issue in self.issues]

    @property
    def repository_id(self) -> str:
        return self.project.repository_id


class WorkspaceIssue(Base):
    __tablename__ = "workspace_issue"
    __table_args__ = (UniqueConstraint("workspace_id", "url"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    workspace_id: Mapped[int] = mapped_column(ForeignKey("workspace.id", ondelete="CASCADE"))
    url: Mapped[str]


class Assignment(Base):
    __tablename__ = "assignment"
    __table_args__ = (
        UniqueConstraint("project_id", "plan_uuid"),
        Index("ix_assignment_workspace_id", "workspace_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("project.id", ondelete="CASCADE"))
    plan_uuid: Mapped[str]
    plan_id: Mapped[int | None]
    workspace_id: Mapped[int | None] = mapped_column(ForeignKey("workspace.id", ondelete="SET NULL"))
    claimed_by_user: Mapped[str | None]
    created_at: Mapped[datetime] = mapped_column(TimestampTZ, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        TimestampTZ, default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    workspace: Mapped[Workspace | None] = relationship(lazy="joined")
