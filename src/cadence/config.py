"""Scheduler configuration from TOML files and environment variables.

Example ``cadence.toml``::

    [scheduler]
    dialect = "seconds"
    timezone = "America/Los_Angeles"
    stop_grace_seconds = 10
    log_level = "DEBUG"

Environment variables fill any value the file leaves unset:
``CADENCE_DIALECT``, ``CADENCE_TIMEZONE``, ``CADENCE_STOP_GRACE_SECONDS``,
``CADENCE_LOG_LEVEL``.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator

from cadence.errors import ConfigError
from cadence.parser import Dialect

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("cadence.toml")

ENV_OVERRIDES = {
    "dialect": "CADENCE_DIALECT",
    "timezone": "CADENCE_TIMEZONE",
    "stop_grace_seconds": "CADENCE_STOP_GRACE_SECONDS",
    "log_level": "CADENCE_LOG_LEVEL",
}


class SchedulerConfig(BaseModel):
    """Scheduler-wide settings."""

    dialect: Dialect = Dialect.STANDARD
    timezone: str = "UTC"
    stop_grace_seconds: float = Field(default=5.0, ge=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("dialect", mode="before")
    @classmethod
    def _normalize_dialect(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown time zone {value!r}") from e
        return value


def _apply_env(section: dict[str, Any]) -> dict[str, Any]:
    """Fill unset keys from CADENCE_* environment variables."""
    for key, env_var in ENV_OVERRIDES.items():
        if section.get(key) is None and (value := os.environ.get(env_var)):
            section[key] = value
    return section


def load_config(path: Path | None = None) -> SchedulerConfig:
    """Load scheduler configuration.

    Args:
        path: Explicit config file. If None, ``./cadence.toml`` is used when
            present; otherwise only defaults and environment apply.

    Returns:
        Validated SchedulerConfig.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ConfigError: If the file is not valid TOML or holds invalid values.
    """
    config_path: Path | None = None
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    elif DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    section: dict[str, Any] = {}
    if config_path is not None:
        try:
            with config_path.open("rb") as f:
                raw_config = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
        section = dict(raw_config.get("scheduler") or {})
        logger.debug("config_loaded", extra={"file.path": str(config_path)})

    try:
        return SchedulerConfig.model_validate(_apply_env(section))
    except ValidationError as e:
        raise ConfigError(f"Invalid scheduler configuration: {e}") from e
