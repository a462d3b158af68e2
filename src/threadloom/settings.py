"""Runtime configuration loaded from ``~/.config/threadloom/config.toml``.

The file is optional; every key has a default. Example::

    [approval]
    auto_approve = ["file_read", "file_list"]
    allow_non_destructive = true

    [delegation]
    default_model = "anthropic:claude-3-5-haiku-latest"
    timeout_seconds = 300

Environment variables override the file: ``THREADLOOM_REDIS_URL``,
``THREADLOOM_DELEGATION_TIMEOUT`` and ``THREADLOOM_LOG_LEVEL``. The database
path override (``THREADLOOM_DB_PATH``) lives in :mod:`threadloom.paths`.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from threadloom.errors import ValidationError
from threadloom.paths import CONFIG_PATH

log = logging.getLogger(__name__)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class StoreSettings:
    busy_timeout_ms: int = 5000
    max_retries: int = 3
    retry_base_delay: float = 0.1
    retry_max_delay: float = 1.0


@dataclass(frozen=True)
class ThreadSettings:
    keep_last_shadows: int = 3
    preserve_recent_events: int = 10


@dataclass(frozen=True)
class TaskSettings:
    max_note_length: int = 10_000


@dataclass(frozen=True)
class ApprovalSettings:
    disable_all_tools: bool = False
    disable_guardrails: bool = False
    allow_non_destructive: bool = False
    auto_approve: tuple[str, ...] = ()
    disable_tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class DelegationSettings:
    default_model: str = "anthropic:claude-3-5-haiku-latest"
    # None means wait without an upper bound.
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class EventSettings:
    redis_url: str | None = None
    stream_maxlen: int = 1000


@dataclass(frozen=True)
class Settings:
    store: StoreSettings = field(default_factory=StoreSettings)
    threads: ThreadSettings = field(default_factory=ThreadSettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    approval: ApprovalSettings = field(default_factory=ApprovalSettings)
    delegation: DelegationSettings = field(default_factory=DelegationSettings)
    events: EventSettings = field(default_factory=EventSettings)
    log_level: str = "WARNING"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when missing or unparseable."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _section(document: dict[str, Any], name: str) -> dict[str, Any]:
    raw = document.get(name, {})
    if not isinstance(raw, dict):
        raise ValidationError(f"[{name}] must be a table", name)
    return raw


def _int(section: dict[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"'{key}' must be an integer >= {minimum}", key)
    return value


def _float(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        raise ValidationError(f"'{key}' must be a non-negative number", key)
    return float(value)


def _bool(section: dict[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"'{key}' must be true or false", key)
    return value


def _names(section: dict[str, Any], key: str) -> tuple[str, ...]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ValidationError(f"'{key}' must be a list of tool names", key)
    return tuple(value)


def _timeout(value: Any, key: str) -> float | None:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            raise ValidationError(f"'{key}' must be a number of seconds", key) from None
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        raise ValidationError(f"'{key}' must be a non-negative number of seconds", key)
    return float(value) or None


def settings_from_dict(document: dict[str, Any]) -> Settings:
    """Build :class:`Settings` from a parsed TOML document, validating every key."""
    store = _section(document, "store")
    threads = _section(document, "threads")
    tasks = _section(document, "tasks")
    approval = _section(document, "approval")
    delegation = _section(document, "delegation")
    events = _section(document, "events")

    default_model = delegation.get("default_model", DelegationSettings.default_model)
    if not isinstance(default_model, str) or ":" not in default_model:
        raise ValidationError("'default_model' must look like 'provider:model'", "default_model")
    redis_url = events.get("redis_url") or None
    if redis_url is not None and not isinstance(redis_url, str):
        raise ValidationError("'redis_url' must be a string", "redis_url")

    log_level = str(document.get("log_level", "WARNING")).upper()
    if log_level not in VALID_LOG_LEVELS:
        raise ValidationError(f"'log_level' must be one of {VALID_LOG_LEVELS}", "log_level")

    return Settings(
        store=StoreSettings(
            busy_timeout_ms=_int(store, "busy_timeout_ms", 5000),
            max_retries=_int(store, "max_retries", 3),
            retry_base_delay=_float(store, "retry_base_delay", 0.1),
            retry_max_delay=_float(store, "retry_max_delay", 1.0),
        ),
        threads=ThreadSettings(
            keep_last_shadows=_int(threads, "keep_last_shadows", 3, minimum=1),
            preserve_recent_events=_int(threads, "preserve_recent_events", 10),
        ),
        tasks=TaskSettings(max_note_length=_int(tasks, "max_note_length", 10_000, minimum=1)),
        approval=ApprovalSettings(
            disable_all_tools=_bool(approval, "disable_all_tools", False),
            disable_guardrails=_bool(approval, "disable_guardrails", False),
            allow_non_destructive=_bool(approval, "allow_non_destructive", False),
            auto_approve=_names(approval, "auto_approve"),
            disable_tools=_names(approval, "disable_tools"),
        ),
        delegation=DelegationSettings(
            default_model=default_model,
            timeout_seconds=_timeout(delegation.get("timeout_seconds", 0), "timeout_seconds"),
        ),
        events=EventSettings(
            redis_url=redis_url,
            stream_maxlen=_int(events, "stream_maxlen", 1000, minimum=1),
        ),
        log_level=log_level,
    )


def _apply_env(document: dict[str, Any]) -> dict[str, Any]:
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in document.items()}
    redis_url = os.environ.get("THREADLOOM_REDIS_URL")
    if redis_url:
        merged.setdefault("events", {})["redis_url"] = redis_url
    timeout = os.environ.get("THREADLOOM_DELEGATION_TIMEOUT")
    if timeout:
        merged.setdefault("delegation", {})["timeout_seconds"] = timeout
    log_level = os.environ.get("THREADLOOM_LOG_LEVEL")
    if log_level:
        merged["log_level"] = log_level
    return merged


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from *path* (default ``~/.config/threadloom/config.toml``)."""
    document = _read_toml_file(path or CONFIG_PATH)
    return settings_from_dict(_apply_env(document))
