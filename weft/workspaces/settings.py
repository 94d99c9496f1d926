"""Configuration loaded from WEFT_* environment variables and ``.weft.yml``."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from weft.workspaces.models.enums import CloneMethod

DEFAULT_CONFIG_FILE = ".weft.yml"


class WorkspaceCommand(BaseModel):
    """A shell command run after cloning or while reusing a workspace."""

    title: str | None = None
    command: str
    working_directory: str | None = None
    """Relative to the workspace root."""

    env: dict[str, str] = Field(default_factory=dict)
    allow_failure: bool = False


class WorkspaceCreationSettings(BaseModel):
    """How new workspaces are provisioned."""

    clone_method: CloneMethod = CloneMethod.GIT
    repository_url: str | None = None
    """Clone URL for ``clone_method=git``.  Inferred from ``origin`` when unset."""

    source_directory: str | None = None
    """Source checkout for ``clone_method=cp``.  Defaults to the primary workspace."""

    clone_location: str | None = None
    """Parent directory for new workspaces.  Required to create workspaces."""

    create_branch: bool = False
    """Create a task branch in freshly cloned workspaces."""

    post_clone_commands: list[WorkspaceCommand] = Field(default_factory=list)
    update_commands: list[WorkspaceCommand] = Field(default_factory=list)
    """Run in a reused workspace after it has been prepared."""


class WeftSettings(BaseSettings):
    """weft settings.

    Fields are read from environment variables with the ``WEFT_`` prefix
    (``WEFT_LOG_LEVEL=DEBUG`` maps to ``log_level``; nested fields use a
    double underscore, e.g. ``WEFT_WORKSPACE__CLONE_LOCATION``), then from
    ``.env``, then from a YAML file (``.weft.yml`` in the current directory
    or the path in ``WEFT_CONFIG_FILE``).
    """

    model_config = SettingsConfigDict(
        env_prefix="WEFT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Storage ---------------------------------------------------------------
    data_root: str = "~/.config/weft"
    """Directory holding the default SQLite database."""

    database_url: str | None = None
    """SQLAlchemy URL.  Defaults to ``sqlite:///{data_root}/weft.db``."""

    # -- Identity --------------------------------------------------------------
    user: str | None = None
    """Overrides the user name otherwise taken from USER / LOGNAME / USERNAME."""

    # -- Plans -----------------------------------------------------------------
    tasks_dir: str = "tasks"
    """Plan directory, relative to the repository root."""

    # -- VCS -------------------------------------------------------------------
    allow_offline: bool = False
    """Continue preparing a reused workspace when fetching fails."""

    primary_remote_name: str = "primary"
    """jj remote name used when pushing bookmarks between workspaces."""

    # -- Workspaces ------------------------------------------------------------
    workspace: WorkspaceCreationSettings = Field(default_factory=WorkspaceCreationSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = os.environ.get("WEFT_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    # -- Helpers ---------------------------------------------------------------

    def resolve_database_url(self) -> str:
        """Return the configured URL or the default SQLite file under ``data_root``."""
        if self.database_url:
            return self.database_url
        root = Path(self.data_root).expanduser()
        return f"sqlite:///{root / 'weft.db'}"


def get_settings() -> WeftSettings:
    """Return a cached settings instance.

    Call ``_get_settings_cached.cache_clear()`` in tests to force a re-read
    after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> WeftSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return WeftSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
