"""Configuration: frozen Config resolved from arguments or ``DELIBERATE_*`` env vars."""

from __future__ import annotations

from dataclasses import dataclass, field
import os

from dotenv import load_dotenv

from deliberate.errors import ConfigurationError
from deliberate.retry import RetryPolicy

load_dotenv()

_ENV_PREFIX = "DELIBERATE_"


def _env_str(name: str) -> str | None:
    value = os.environ.get(_ENV_PREFIX + name)
    if value is None:
        return None
    return value.strip() or None


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{_ENV_PREFIX}{name} must be a number, got {raw!r}",
            hint="Use seconds, e.g. 30 or 2.5.",
        ) from None


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}",
            hint="Use a whole number, e.g. 1000.",
        ) from None


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """Immutable configuration for the orchestrator.

    Every field left as *None* is resolved from the matching
    ``DELIBERATE_*`` environment variable, then from the default below.

    Example:
        config = Config(analysis_base_url="https://analysis.internal")
        # token is resolved from DELIBERATE_ANALYSIS_TOKEN
    """

    #: Without a base URL the analysis client is not constructed and
    #: analysis-backed tools report that they are not configured.
    analysis_base_url: str | None = None
    analysis_token: str | None = None
    analysis_timeout_s: float | None = None
    turn_budget_s: float | None = None
    model_timeout_s: float | None = None
    #: Short budget for acknowledgement chats after direct graph edits.
    ack_timeout_s: float | None = None
    idempotency_ttl_s: float | None = None
    idempotency_max_entries: int | None = None
    #: Model-mediated turns whose assembled prompt exceeds this are refused.
    max_context_chars: int | None = None
    #: Attach diagnostics and parse warnings to envelopes.
    include_debug: bool | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Resolve unset fields from the environment and validate."""
        resolved: dict[str, object] = {
            "analysis_base_url": self.analysis_base_url
            or _env_str("ANALYSIS_BASE_URL"),
            "analysis_token": self.analysis_token or _env_str("ANALYSIS_TOKEN"),
            "analysis_timeout_s": self.analysis_timeout_s
            if self.analysis_timeout_s is not None
            else _env_float("ANALYSIS_TIMEOUT_S", 30.0),
            "turn_budget_s": self.turn_budget_s
            if self.turn_budget_s is not None
            else _env_float("TURN_BUDGET_S", 60.0),
            "model_timeout_s": self.model_timeout_s
            if self.model_timeout_s is not None
            else _env_float("MODEL_TIMEOUT_S", 30.0),
            "ack_timeout_s": self.ack_timeout_s
            if self.ack_timeout_s is not None
            else _env_float("ACK_TIMEOUT_S", 5.0),
            "idempotency_ttl_s": self.idempotency_ttl_s
            if self.idempotency_ttl_s is not None
            else _env_float("IDEMPOTENCY_TTL_S", 600.0),
            "idempotency_max_entries": self.idempotency_max_entries
            if self.idempotency_max_entries is not None
            else _env_int("IDEMPOTENCY_MAX_ENTRIES", 1000),
            "max_context_chars": self.max_context_chars
            if self.max_context_chars is not None
            else _env_int("MAX_CONTEXT_CHARS", 200_000),
            "include_debug": self.include_debug
            if self.include_debug is not None
            else _env_bool("INCLUDE_DEBUG", False),
        }
        for name, value in resolved.items():
            object.__setattr__(self, name, value)

        if self.analysis_base_url is not None:
            base = self.analysis_base_url.rstrip("/")
            if not base.startswith(("http://", "https://")):
                raise ConfigurationError(
                    f"analysis_base_url must be an http(s) URL, got {base!r}",
                    hint="Set DELIBERATE_ANALYSIS_BASE_URL, e.g. https://analysis.example.com",
                )
            object.__setattr__(self, "analysis_base_url", base)

        for name in (
            "analysis_timeout_s",
            "turn_budget_s",
            "model_timeout_s",
            "ack_timeout_s",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(
                    f"{name} must be > 0, got {getattr(self, name)}",
                    hint="Timeouts and budgets are in seconds.",
                )
        if self.idempotency_ttl_s < 0:
            raise ConfigurationError(
                f"idempotency_ttl_s must be ≥ 0, got {self.idempotency_ttl_s}",
                hint="0 disables replay of finished turns.",
            )
        if self.idempotency_max_entries < 1:
            raise ConfigurationError(
                f"idempotency_max_entries must be ≥ 1, got {self.idempotency_max_entries}",
                hint="This bounds how many turn results are remembered.",
            )
        if self.max_context_chars < 1:
            raise ConfigurationError(
                f"max_context_chars must be ≥ 1, got {self.max_context_chars}",
                hint="This bounds the prompt size sent to the model.",
            )
        if self.analysis_timeout_s > self.turn_budget_s:
            raise ConfigurationError(
                "analysis_timeout_s must not exceed turn_budget_s",
                hint="A single analysis call cannot outlive the turn that made it.",
            )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(analysis_base_url={self.analysis_base_url!r}, "
            f"analysis_token={'[REDACTED]' if self.analysis_token else None}, "
            f"turn_budget_s={self.turn_budget_s}, "
            f"analysis_timeout_s={self.analysis_timeout_s})"
        )

    __repr__ = __str__
