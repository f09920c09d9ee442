"""Configuration management for Forge MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    executor_path: str | None = Field(default=None, validation_alias="FORGE_EXECUTOR_PATH")
    executor_model: str | None = Field(default=None, validation_alias="FORGE_EXECUTOR_MODEL")
    repo_base: Path = Field(default=Path("/tmp/forge-repos"), validation_alias="FORGE_REPO_BASE")
    work_base: Path = Field(default=Path("/tmp/forge-work"), validation_alias="FORGE_WORK_BASE")
    default_branch: str = Field(default="main", validation_alias="FORGE_DEFAULT_BRANCH")

    poll_interval: float = Field(default=2.0, validation_alias="FORGE_POLL_INTERVAL")
    commit_window: int = Field(default=30, validation_alias="FORGE_COMMIT_WINDOW")
    git_timeout: float = Field(default=5.0, validation_alias="FORGE_GIT_TIMEOUT")
    conflict_backoff: float = Field(default=3.0, validation_alias="FORGE_CONFLICT_BACKOFF")
    cooldown: float = Field(default=5.0, validation_alias="FORGE_COOLDOWN")

    completion_marker: str = Field(default="[done]", validation_alias="FORGE_COMPLETION_MARKER")
    source_dir: str = Field(default="src", validation_alias="FORGE_SOURCE_DIR")
    source_extensions: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(".js", ".html", ".css"), validation_alias="FORGE_SOURCE_EXTENSIONS"
    )
    spec_document: str = Field(default="SPEC.md", validation_alias="FORGE_SPEC_DOCUMENT")
    instruction_document: str = Field(
        default="CLAUDE.md", validation_alias="FORGE_INSTRUCTION_DOCUMENT"
    )

    max_workers: int = Field(default=5, validation_alias="FORGE_MAX_WORKERS")
    session_log_limit: int = Field(default=500, validation_alias="FORGE_SESSION_LOG_LIMIT")
    worker_profile: str = Field(default="default", validation_alias="FORGE_WORKER_PROFILE")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="FORGE_PROFILE_PATHS"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="FORGE_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FORGE_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("FORGE_PROFILE_PATHS must be a list of paths or a path-separated string")

    @field_validator("source_extensions", mode="before")
    @classmethod
    def _parse_source_extensions(cls, value):
        if value is None or value == "":
            return (".js", ".html", ".css")
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return tuple(item if item.startswith(".") else f".{item}" for item in value)
        raise TypeError("FORGE_SOURCE_EXTENSIONS must be a list or a comma-separated string")

    @field_validator("poll_interval", "git_timeout")
    @classmethod
    def _validate_positive(cls, value: float, info) -> float:
        if value <= 0:
            raise ValueError(f"FORGE_{info.field_name.upper()} must be > 0")
        return value

    @field_validator("conflict_backoff", "cooldown")
    @classmethod
    def _validate_non_negative(cls, value: float, info) -> float:
        if value < 0:
            raise ValueError(f"FORGE_{info.field_name.upper()} must be >= 0")
        return value

    @field_validator("commit_window", "max_workers", "session_log_limit")
    @classmethod
    def _validate_at_least_one(cls, value: int, info) -> int:
        if value < 1:
            raise ValueError(f"FORGE_{info.field_name.upper()} must be >= 1")
        return value

    @field_validator("completion_marker", "default_branch")
    @classmethod
    def _validate_not_blank(cls, value: str, info) -> str:
        if not value.strip():
            raise ValueError(f"FORGE_{info.field_name.upper()} must not be empty")
        return value


@lru_cache(maxsize=1)
def get_settings() -> ForgeSettings:
    """Return cached settings instance."""

    settings = ForgeSettings()
    settings.repo_base = settings.repo_base.expanduser().resolve()
    settings.work_base = settings.work_base.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["ForgeSettings", "get_settings"]
