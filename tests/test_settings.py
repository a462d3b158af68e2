"""Tests for config file loading and environment overrides."""

import logging

import pytest

from threadloom.errors import ValidationError
from threadloom.settings import Settings, load_settings, settings_from_dict

ENV_VARS = ("THREADLOOM_REDIS_URL", "THREADLOOM_DELEGATION_TIMEOUT", "THREADLOOM_LOG_LEVEL")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "config.toml"
    path.write_text(text)
    return path


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(tmp_path / "absent.toml")
    assert settings == Settings()
    assert settings.threads.keep_last_shadows == 3
    assert settings.delegation.timeout_seconds is None
    assert settings.store.max_retries == 3


def test_file_values(tmp_path):
    path = _write(
        tmp_path,
        """
log_level = "info"

[store]
max_retries = 5
retry_base_delay = 0.05

[threads]
keep_last_shadows = 2

[approval]
auto_approve = ["file_read", "file_list"]
allow_non_destructive = true

[delegation]
default_model = "openai:gpt-4o-mini"
timeout_seconds = 30

[events]
redis_url = "redis://localhost:6379/1"
""",
    )
    settings = load_settings(path)
    assert settings.log_level == "INFO"
    assert settings.store.max_retries == 5
    assert settings.store.retry_base_delay == 0.05
    assert settings.threads.keep_last_shadows == 2
    assert settings.approval.auto_approve == ("file_read", "file_list")
    assert settings.approval.allow_non_destructive is True
    assert settings.delegation.default_model == "openai:gpt-4o-mini"
    assert settings.delegation.timeout_seconds == 30.0
    assert settings.events.redis_url == "redis://localhost:6379/1"


@pytest.mark.parametrize(
    ("document", "field"),
    [
        ({"store": {"max_retries": -1}}, "max_retries"),
        ({"store": {"busy_timeout_ms": "soon"}}, "busy_timeout_ms"),
        ({"threads": {"keep_last_shadows": 0}}, "keep_last_shadows"),
        ({"approval": {"auto_approve": "bash"}}, "auto_approve"),
        ({"approval": {"disable_all_tools": "yes"}}, "disable_all_tools"),
        ({"approval": 3}, "approval"),
        ({"delegation": {"default_model": "haiku"}}, "default_model"),
        ({"delegation": {"timeout_seconds": -5}}, "timeout_seconds"),
        ({"log_level": "LOUD"}, "log_level"),
    ],
)
def test_invalid_values(document, field):
    with pytest.raises(ValidationError) as exc_info:
        settings_from_dict(document)
    assert exc_info.value.invalid_fields == [field]


def test_zero_timeout_means_unbounded():
    settings = settings_from_dict({"delegation": {"timeout_seconds": 0}})
    assert settings.delegation.timeout_seconds is None


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = _write(tmp_path, '[delegation]\ntimeout_seconds = 30\n')
    monkeypatch.setenv("THREADLOOM_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("THREADLOOM_DELEGATION_TIMEOUT", "12.5")
    monkeypatch.setenv("THREADLOOM_LOG_LEVEL", "debug")

    settings = load_settings(path)

    assert settings.events.redis_url == "redis://cache:6379/0"
    assert settings.delegation.timeout_seconds == 12.5
    assert settings.log_level == "DEBUG"


def test_bad_environment_timeout(tmp_path, monkeypatch):
    monkeypatch.setenv("THREADLOOM_DELEGATION_TIMEOUT", "soon")
    with pytest.raises(ValidationError) as exc_info:
        load_settings(tmp_path / "absent.toml")
    assert exc_info.value.invalid_fields == ["timeout_seconds"]


def test_unparseable_file_falls_back_to_defaults(tmp_path, caplog):
    path = _write(tmp_path, "[store\nmax_retries = ")
    with caplog.at_level(logging.WARNING, logger="threadloom.settings"):
        settings = load_settings(path)
    assert settings == Settings()
    assert "using defaults" in caplog.text
