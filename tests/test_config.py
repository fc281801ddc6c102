"""Tests for config validation."""

import pytest
from pydantic import ValidationError

from relay.config import VERSION, Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("FAN_IN_STORE", raising=False)
    monkeypatch.delenv("MAX_STEPS_PER_TURN", raising=False)
    s = Settings(_env_file=None)

    assert s.FAN_IN_STORE == "postgres"
    assert s.MAX_STEPS_PER_TURN == 25
    assert s.MAX_TURNS_PER_SESSION == 50
    assert s.EDIT_CONTEXT_LINES == 5
    assert s.DEFAULT_PROVIDER == "anthropic"


def test_env_vars_are_coerced(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/relay")
    monkeypatch.setenv("MAX_STEPS_PER_TURN", "7")
    monkeypatch.setenv("DEBUG", "false")

    s = Settings(_env_file=None)

    assert s.DATABASE_URL == "postgresql://u:p@db/relay"
    assert s.MAX_STEPS_PER_TURN == 7
    assert s.DEBUG is False


def test_unknown_fan_in_store_rejected(monkeypatch):
    monkeypatch.setenv("FAN_IN_STORE", "redis")
    with pytest.raises(ValidationError, match="FAN_IN_STORE"):
        Settings(_env_file=None)


@pytest.mark.parametrize("var", ["MAX_STEPS_PER_TURN", "MAX_TURNS_PER_SESSION"])
def test_limits_must_be_positive(monkeypatch, var):
    monkeypatch.setenv(var, "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_version():
    assert VERSION == "0.1.0"


def test_post_write_hooks_parsed_from_json(monkeypatch):
    monkeypatch.setenv(
        "POST_WRITE_HOOKS",
        '[{"name": "ruff", "command": "ruff check %PATH%", "glob": "*.py", "on_failure": "block"}]',
    )
    monkeypatch.setenv("FAN_IN_DOWNSTREAM_URL", "http://downstream.test/fan-in")

    s = Settings(_env_file=None)

    assert s.POST_WRITE_HOOKS[0].name == "ruff"
    assert s.POST_WRITE_HOOKS[0].on_failure == "block"
    assert s.POST_WRITE_HOOK_TIMEOUT_S == 30.0
    assert s.FAN_IN_DOWNSTREAM_URL == "http://downstream.test/fan-in"
