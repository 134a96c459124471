from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from direxpo.config import BYTES_PER_MB, DEFAULT_MAX_SIZE_MB, SelectionPayload
from direxpo.file_manipulation import parse_exclude_patterns

ENV_FILE = find_dotenv(usecwd=True)
ENV_PREFIX = "DIREXPO_"


class Settings(BaseModel):
    """Configuration settings for the direxpo server."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    output_dir: Path = Field(default=Path(".output"), description="Directory receiving exports.")
    host: str = Field(default="127.0.0.1", description="Bind address.")
    port: int = Field(default=5199, description="Bind port.")
    default_max_size_mb: float = Field(
        default=DEFAULT_MAX_SIZE_MB,
        description="Size limit used when a request does not send one.",
    )
    cors_origins: list[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins.")
    log_file: str = Field(default="", description="Log file path.")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> Settings:  # noqa: ANN401
    """Build settings from `.env`, an optional YAML file, ``DIREXPO_*`` variables and overrides.

    Later sources win: YAML < environment < explicit overrides.

    Args:
        config_file: optional YAML file holding a top-level mapping of settings.
        **overrides: values taking precedence over every other source (None values are ignored).

    Raises:
        ValueError: if the YAML file does not hold a mapping.

    Returns:
        Settings: the merged settings.
    """
    if ENV_FILE:
        load_dotenv(ENV_FILE, override=False)

    values: dict[str, Any] = {}
    if config_file:
        data = yaml.safe_load(Path(config_file).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            msg = f"Config file {config_file} must contain a mapping."
            raise ValueError(msg)
        values.update(data)

    for name in Settings.model_fields:
        env_value = os.environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            values[name] = env_value

    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)


class ExportOptions(BaseModel):
    """Validated view of the ``options`` object posted to ``/api/run``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    target_path: str = Field(..., min_length=1)
    filter: str | None = None
    pattern: str | None = None
    exclude: list[str] = Field(default_factory=list)
    max_size: float | None = Field(default=None, description="Legacy limit in bytes.")
    max_size_mb: float | None = None
    include_tree: bool = False
    tree_only: bool = False
    selection_payload: SelectionPayload | None = None

    @field_validator("target_path")
    @classmethod
    def _target_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "targetPath is required and must be a non-empty string."
            raise ValueError(msg)
        return value

    @field_validator("exclude", mode="before")
    @classmethod
    def _parse_exclude(cls, value: object) -> list[str]:
        return parse_exclude_patterns(value)  # type: ignore[arg-type]

    @field_validator("pattern", mode="before")
    @classmethod
    def _strip_pattern(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @model_validator(mode="after")
    def _pattern_implies_glob(self) -> ExportOptions:
        if self.pattern and not self.filter:
            object.__setattr__(self, "filter", "glob")
        return self

    def effective_max_size_mb(self, default: float = DEFAULT_MAX_SIZE_MB) -> float:
        """Return the size limit in MB; ``0`` means unlimited.

        ``maxSizeMb`` wins over ``maxSize`` (bytes). Absent or non-finite values fall back
        to ``default``; any explicit value ``<= 0`` disables the limit.

        Args:
            default: the configured default limit in MB.

        Returns:
            float: the limit in MB, or 0 for no limit.
        """
        if self.max_size_mb is not None:
            limit = self.max_size_mb
        elif self.max_size is not None:
            limit = self.max_size / BYTES_PER_MB
        else:
            limit = default
        if not math.isfinite(limit):
            limit = default
        return max(limit, 0.0)
