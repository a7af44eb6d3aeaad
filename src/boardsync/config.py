"""Configuration loader for boardsync."""

from __future__ import annotations

import asyncio
import os
import tempfile
import tomllib
from typing import TYPE_CHECKING, Literal

import tomlkit
from pydantic import BaseModel, Field, field_validator

from boardsync.paths import ensure_directories, get_config_path

if TYPE_CHECKING:
    from pathlib import Path

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _replace_file(path: Path, content: str) -> None:
    """Swap ``content`` in for ``path`` so readers never see a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
    ) as staging:
        staging.write(content)
        staging.flush()
        os.fsync(staging.fileno())
    try:
        os.replace(staging.name, path)
    except OSError:
        os.unlink(staging.name)
        raise


class GeneralConfig(BaseModel):
    """General configuration settings."""

    log_level: LogLevel = Field(default="WARNING", description="Minimum level for log records")
    database_path: str | None = Field(
        default=None, description="SQLite database path (None = data directory default)"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


class SyncConfig(BaseModel):
    """Synchronization engine settings."""

    notify_success: bool = Field(
        default=True, description="Publish success notices after confirmed mutations"
    )


class BoardSyncConfig(BaseModel):
    """Root configuration model."""

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> BoardSyncConfig:
        """Load configuration from TOML file or use defaults."""
        if config_path is None:
            ensure_directories()
            config_path = get_config_path()

        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)

        return cls()

    async def save(self, path: Path) -> None:
        """Serialize current config to a TOML file (created if missing)."""
        doc = tomlkit.document()

        general_table = tomlkit.table()
        for key, value in self.general.model_dump().items():
            if value is not None:
                general_table[key] = value
        doc["general"] = general_table

        sync_table = tomlkit.table()
        for key, value in self.sync.model_dump().items():
            sync_table[key] = value
        doc["sync"] = sync_table

        content = tomlkit.dumps(doc)
        await asyncio.to_thread(_replace_file, path, content)

    async def update_setting(self, path: Path, section: str, key: str, value: object) -> None:
        """Change one setting in an existing TOML file, preserving comments."""
        import aiofiles

        section_model = getattr(self, section, None)
        if not isinstance(section_model, BaseModel) or key not in type(section_model).model_fields:
            raise KeyError(f"Unknown setting: {section}.{key}")
        validated = section_model.model_validate({**section_model.model_dump(), key: value})
        setattr(self, section, validated)

        if path.exists():
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
            doc = tomlkit.parse(content)
        else:
            doc = tomlkit.document()

        if section not in doc:
            doc[section] = tomlkit.table()
        doc[section][key] = getattr(validated, key)  # type: ignore[index]

        content = tomlkit.dumps(doc)
        await asyncio.to_thread(_replace_file, path, content)
