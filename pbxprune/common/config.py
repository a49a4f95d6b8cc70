"""Configuration loader for pbxprune."""
from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field, validator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: str) -> str:
    if not isinstance(value, str) or not _IDENTIFIER.match(value):
        raise ValueError(f"{value!r} is not a plain SQL identifier")
    return value


@dataclass(slots=True)
class Config:
    """Simple wrapper around the loaded configuration dictionary."""

    data: Dict[str, Any]

    def get(self, path: str, default: Any | None = None) -> Any:
        """Return a key from the configuration using dot-notation."""

        cursor: Any = self.data
        for token in path.split("."):
            if not isinstance(cursor, dict):
                return default
            if token not in cursor:
                return default
            cursor = cursor[token]
        return cursor


class ConfigLoader:
    """Loads YAML configuration files with simple caching."""

    _lock = threading.Lock()
    _cached: Config | None = None
    _source_path: Path | None = None
    _source_mtime: float | None = None

    @classmethod
    def load(cls, path: str | Path) -> Config:
        config_path = Path(path).expanduser().resolve()
        with cls._lock:
            if cls._should_reload(config_path):
                with config_path.open("r", encoding="utf-8") as handle:
                    raw_config = yaml.safe_load(handle) or {}
                cls._cached = Config(raw_config)
                cls._source_path = config_path
                cls._source_mtime = config_path.stat().st_mtime
        assert cls._cached is not None, "Configuration cache not initialized"
        return cls._cached

    @classmethod
    def _should_reload(cls, path: Path) -> bool:
        if cls._cached is None:
            return True
        if cls._source_path != path:
            return True
        try:
            return path.stat().st_mtime != cls._source_mtime
        except FileNotFoundError:
            return True


class CallTableBinding(BaseModel):
    """Names of the call detail table and the columns retention relies on."""

    table: str = Field("cdr", description="Live call detail record table")
    timestamp: str = Field("calldate", description="Call start timestamp column")
    sequence: str = Field("sequence", description="Per-day monotonic sequence column")
    correlation: str = Field("uniqueid", description="Key shared with the event log")

    @validator("table", "timestamp", "sequence", "correlation")
    def check_identifier(cls, value: str) -> str:  # noqa: D401
        return _check_identifier(value)


class EventTableBinding(BaseModel):
    """Names of the channel event table and the columns retention relies on."""

    table: str = Field("cel", description="Live channel event log table")
    identifier: str = Field("id", description="Auto-increment event identifier column")
    timestamp: str = Field("eventtime", description="Event timestamp column")
    correlation: str = Field("uniqueid", description="Key shared with the call table")

    @validator("table", "identifier", "timestamp", "correlation")
    def check_identifier(cls, value: str) -> str:  # noqa: D401
        return _check_identifier(value)


class RetentionPolicy(BaseModel):
    """Validated ``retention`` section of the configuration file."""

    months: int = Field(6, ge=1, description="Whole months of data to keep")
    slice_days: int = Field(10, ge=1, description="Reference slice width for the boundary strategy")
    correlation: str = Field("join", description="Event correlation strategy: join or boundary")
    staging_suffix: str = Field("_new", description="Suffix of the rebuilt staging tables")
    backup_suffix: str = Field("_old", description="Suffix the replaced tables are renamed to")
    drop_backup: bool = Field(True, description="Drop backups once the swap is verified")
    calls: CallTableBinding = Field(default_factory=CallTableBinding)
    events: EventTableBinding | None = Field(default_factory=EventTableBinding)

    @validator("correlation")
    def known_strategy(cls, value: str) -> str:
        value = str(value).strip().lower()
        if value not in ("join", "boundary"):
            raise ValueError("correlation must be 'join' or 'boundary'")
        return value

    @validator("staging_suffix", "backup_suffix")
    def valid_suffix(cls, value: str) -> str:
        if not value or not re.match(r"^[A-Za-z0-9_]+$", value):
            raise ValueError(f"{value!r} is not a valid table suffix")
        return value

    @validator("backup_suffix")
    def distinct_suffixes(cls, value: str, values: Dict[str, Any]) -> str:
        if value == values.get("staging_suffix"):
            raise ValueError("staging_suffix and backup_suffix must differ")
        return value

    def staging_name(self, table: str) -> str:
        return f"{table}{self.staging_suffix}"

    def backup_name(self, table: str) -> str:
        return f"{table}{self.backup_suffix}"

    def live_tables(self) -> list[str]:
        tables = [self.calls.table]
        if self.events is not None:
            tables.append(self.events.table)
        return tables


def load_policy(cfg: Config, months: int | None = None) -> RetentionPolicy:
    """Build the retention policy from ``cfg``, optionally overriding the window."""

    raw = dict(cfg.get("retention", {}) or {})
    if months is not None:
        raw["months"] = months
    return RetentionPolicy(**raw)


def get_database_url(cfg: Config, default: str = "sqlite:///./pbxprune.db") -> str:
    return os.getenv("PBXPRUNE_DATABASE_URL") or cfg.get("storage.database_url", default)


__all__ = [
    "Config",
    "ConfigLoader",
    "CallTableBinding",
    "EventTableBinding",
    "RetentionPolicy",
    "load_policy",
    "get_database_url",
]
