"""Configuration resolution and validation."""

from __future__ import annotations

import re

import pytest

from deliberate.config import Config
from deliberate.errors import ConfigurationError
from deliberate.retry import RetryPolicy

pytestmark = pytest.mark.unit


def test_defaults() -> None:
    config = Config()
    assert config.analysis_base_url is None
    assert config.analysis_token is None
    assert config.analysis_timeout_s == 30.0
    assert config.turn_budget_s == 60.0
    assert config.model_timeout_s == 30.0
    assert config.ack_timeout_s == 5.0
    assert config.idempotency_ttl_s == 600.0
    assert config.idempotency_max_entries == 1000
    assert config.max_context_chars == 200_000
    assert config.include_debug is False
    assert config.retry == RetryPolicy()


def test_env_resolution(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELIBERATE_ANALYSIS_BASE_URL", "https://analysis.example.com/")
    monkeypatch.setenv("DELIBERATE_ANALYSIS_TOKEN", "env-token")
    monkeypatch.setenv("DELIBERATE_TURN_BUDGET_S", "45")
    monkeypatch.setenv("DELIBERATE_IDEMPOTENCY_MAX_ENTRIES", "50")
    monkeypatch.setenv("DELIBERATE_INCLUDE_DEBUG", "yes")

    config = Config()

    assert config.analysis_base_url == "https://analysis.example.com"
    assert config.analysis_token == "env-token"
    assert config.turn_budget_s == 45.0
    assert config.idempotency_max_entries == 50
    assert config.include_debug is True


def test_explicit_values_beat_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELIBERATE_MODEL_TIMEOUT_S", "99")
    monkeypatch.setenv("DELIBERATE_INCLUDE_DEBUG", "true")
    config = Config(model_timeout_s=3.0, include_debug=False)
    assert config.model_timeout_s == 3.0
    assert config.include_debug is False


def test_blank_env_values_are_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DELIBERATE_ANALYSIS_TOKEN", "   ")
    assert Config().analysis_token is None


@pytest.mark.parametrize(
    ("env", "value"),
    [("DELIBERATE_TURN_BUDGET_S", "soon"), ("DELIBERATE_MAX_CONTEXT_CHARS", "1.5")],
)
def test_unparseable_env_values(
    monkeypatch: pytest.MonkeyPatch, env: str, value: str
) -> None:
    monkeypatch.setenv(env, value)
    with pytest.raises(ConfigurationError) as exc_info:
        Config()
    assert env in str(exc_info.value)
    assert exc_info.value.hint


@pytest.mark.parametrize(
    ("kwargs", "fragment"),
    [
        ({"analysis_base_url": "analysis.example.com"}, "http(s) URL"),
        ({"turn_budget_s": 0}, "turn_budget_s"),
        ({"model_timeout_s": -1}, "model_timeout_s"),
        ({"ack_timeout_s": 0}, "ack_timeout_s"),
        ({"idempotency_ttl_s": -1}, "idempotency_ttl_s"),
        ({"idempotency_max_entries": 0}, "idempotency_max_entries"),
        ({"max_context_chars": 0}, "max_context_chars"),
        ({"analysis_timeout_s": 90, "turn_budget_s": 60}, "must not exceed"),
    ],
)
def test_invalid_values(kwargs: dict, fragment: str) -> None:
    with pytest.raises(ConfigurationError, match=re.escape(fragment)):
        Config(**kwargs)


def test_zero_ttl_is_allowed() -> None:
    assert Config(idempotency_ttl_s=0).idempotency_ttl_s == 0


def test_repr_redacts_token() -> None:
    config = Config(analysis_base_url="https://a.test", analysis_token="sk-live-123")
    text = repr(config)
    assert "sk-live-123" not in text
    assert "[REDACTED]" in text
    assert str(config) == text


def test_frozen() -> None:
    config = Config()
    with pytest.raises(AttributeError):
        config.turn_budget_s = 1.0  # type: ignore[misc]


class TestRetryPolicy:
    def test_defaults_match_upstream_timing(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 2
        assert policy.backoff_s == 0.8
        assert policy.jitter_ratio == 0.25
        assert policy.min_remaining_budget_s == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"max_attempts": 3},
            {"backoff_s": -0.1},
            {"jitter_ratio": 1.0},
            {"jitter_ratio": -0.1},
            {"min_remaining_budget_s": -1},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
