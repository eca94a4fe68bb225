"""Configuration models and enums for toolgate.

Single source of truth for runtime settings and their defaults. Values are
resolved from CLI overrides, ``TOOLGATE_*`` environment variables and the TOML
config file, in that order of precedence.
"""

from __future__ import annotations

import os
import stat
import tomllib
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, cast

from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolgate.paths import get_toolgate_home


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class DeliveryPolicy(str, Enum):
    """How the event emitter treats a subscriber that is not keeping up."""

    BUFFER = "buffer"
    BLOCK = "block"
    DROP_OLDEST = "drop-oldest"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


DEFAULT_MAX_ARGUMENT_BYTES = 32 * 1024
DEFAULT_MAX_ITERATIONS = 20
DEFAULT_MAX_EXECUTION_HISTORY = 100
DEFAULT_EVENT_BUFFER_SIZE = 256


class Settings(BaseModel):
    """Resolved toolgate settings."""

    model_config = ConfigDict(frozen=True, validate_default=True, extra="forbid")

    auto_approve: bool = False
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, gt=0)
    max_execution_history: int = Field(default=DEFAULT_MAX_EXECUTION_HISTORY, gt=0)
    max_argument_bytes: int = Field(default=DEFAULT_MAX_ARGUMENT_BYTES, gt=0)
    handler_timeout: float | None = None
    delivery_policy: DeliveryPolicy = DeliveryPolicy.BUFFER
    event_buffer_size: int = Field(default=DEFAULT_EVENT_BUFFER_SIZE, gt=0)
    journal_enabled: bool = True
    log_level: LogLevel = LogLevel.INFO

    @field_validator("handler_timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is None:
            return None
        if value <= 0:
            raise ValueError("handler_timeout must be positive when provided")
        return value


EXPECTED_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600

ENV_PREFIX = "TOOLGATE_"


def default_config_path() -> Path:
    return get_toolgate_home() / "config.toml"


def load_settings(
    cli_overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    config_path: Path | str | None = None,
    *,
    create_if_missing: bool = False,
) -> Settings:
    env = env if env is not None else os.environ
    cli_overrides = cli_overrides or {}
    path = Path(config_path) if config_path else default_config_path()

    created_new = False
    if not path.exists() and create_if_missing:
        path.parent.mkdir(parents=True, exist_ok=True)
        write_config(Settings(), path)
        created_new = True

    config_data: dict[str, Any] = {}
    if path.exists():
        _ensure_permissions(path)
        config_data = _read_toml(path)

    defaults = Settings()

    def resolve(name: str, section: str, key: str | None = None) -> Any:
        return _first_value(
            _clean_str(cli_overrides.get(name)),
            _clean_str(env.get(ENV_PREFIX + name.upper())),
            _clean_str(_get_config_value(config_data, section, key or name)),
            getattr(defaults, name),
        )

    auto_approve = _coerce_bool(resolve("auto_approve", "runtime"), defaults.auto_approve)
    execution_mode = _coerce_enum(resolve("execution_mode", "runtime"), ExecutionMode, defaults.execution_mode)
    max_iterations = _coerce_int(resolve("max_iterations", "runtime"), defaults.max_iterations)
    max_history = _coerce_int(resolve("max_execution_history", "runtime"), defaults.max_execution_history)
    max_argument_bytes = _coerce_int(resolve("max_argument_bytes", "runtime"), defaults.max_argument_bytes)
    handler_timeout = _coerce_float(resolve("handler_timeout", "runtime"))
    delivery_policy = _coerce_enum(
        resolve("delivery_policy", "events", "delivery_policy"), DeliveryPolicy, defaults.delivery_policy
    )
    event_buffer_size = _coerce_int(resolve("event_buffer_size", "events", "buffer_size"), defaults.event_buffer_size)
    journal_enabled = _coerce_bool(resolve("journal_enabled", "events", "journal"), defaults.journal_enabled)
    log_level = _coerce_enum(resolve("log_level", "logging"), LogLevel, defaults.log_level)

    settings = Settings(
        auto_approve=auto_approve,
        execution_mode=cast(ExecutionMode, execution_mode),
        max_iterations=max_iterations,
        max_execution_history=max_history,
        max_argument_bytes=max_argument_bytes,
        handler_timeout=handler_timeout,
        delivery_policy=cast(DeliveryPolicy, delivery_policy),
        event_buffer_size=event_buffer_size,
        journal_enabled=journal_enabled,
        log_level=cast(LogLevel, log_level),
    )

    if created_new:
        write_config(settings, path)
    return settings


def write_config(settings: Settings, config_path: Path | str | None = None) -> Path:
    path = Path(config_path) if config_path else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    sections: list[str] = []
    _append_section(
        sections,
        "runtime",
        {
            "auto_approve": settings.auto_approve,
            "execution_mode": settings.execution_mode,
            "max_iterations": settings.max_iterations,
            "max_execution_history": settings.max_execution_history,
            "max_argument_bytes": settings.max_argument_bytes,
            "handler_timeout": settings.handler_timeout,
        },
    )
    _append_section(
        sections,
        "events",
        {
            "delivery_policy": settings.delivery_policy,
            "buffer_size": settings.event_buffer_size,
            "journal": settings.journal_enabled,
        },
    )
    _append_section(sections, "logging", {"log_level": settings.log_level})

    content = "\n\n".join(filter(None, sections)) + "\n"
    path.write_text(content, encoding="utf-8")
    path.chmod(EXPECTED_FILE_MODE)
    return path


def _ensure_permissions(path: Path) -> None:
    current_mode = stat.S_IMODE(path.stat().st_mode)
    if current_mode != EXPECTED_FILE_MODE:
        path.chmod(EXPECTED_FILE_MODE)


def _read_toml(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _get_config_value(config: Mapping[str, Any], section: str, key: str) -> Any:
    section_data = config.get(section)
    if not isinstance(section_data, dict):
        return None
    return section_data.get(key)


def _clean_str(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    return value


def _first_value(*candidates: Any) -> Any:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _coerce_enum(value: Any, enum_cls: type[Enum], default: Enum | None = None) -> Enum | None:
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.lower())
        except ValueError:
            return default
    return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _append_section(parts: list[str], name: str, values: Mapping[str, Any]) -> None:
    filtered = {k: v for k, v in values.items() if v is not None}
    if not filtered:
        return
    lines = [f"[{name}]"]
    for key, val in filtered.items():
        if isinstance(val, Enum):
            lines.append(f'{key} = "{val.value}"')
        elif isinstance(val, bool):
            lines.append(f"{key} = {'true' if val else 'false'}")
        elif isinstance(val, str):
            escaped = val.replace('"', '\\"')
            lines.append(f'{key} = "{escaped}"')
        else:
            lines.append(f"{key} = {val}")
    parts.append("\n".join(lines))


__all__ = [
    "Settings",
    "ExecutionMode",
    "DeliveryPolicy",
    "LogLevel",
    "DEFAULT_MAX_ARGUMENT_BYTES",
    "default_config_path",
    "load_settings",
    "write_config",
]
