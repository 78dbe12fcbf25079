"""Pytest configuration and fixtures.

Provides test doubles for every collaborator, a scripted analysis service
built on ``httpx.MockTransport``, and environment isolation. Fixtures are
autouse only where noted.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any, Callable

import httpx
import pytest

from deliberate.adapters import GraphDraft, GraphEdit, ModelReply
from deliberate.analysis import AnalysisClient
from deliberate.config import Config
from deliberate.context import AssembledContext
from deliberate.retry import RetryPolicy
from deliberate.types import (
    AnalysisInputs,
    AnalysisOption,
    ConversationContext,
    Framing,
    TurnRequest,
)

TEST_TOKEN = "sk-test-very-secret-token"
BASE_URL = "https://analysis.test"

#: No waiting between attempts and no budget floor; tests opt in to both.
FAST_RETRY = RetryPolicy(backoff_s=0.01, jitter_ratio=0.0, min_remaining_budget_s=0.0)

# =============================================================================
# Test Doubles
# =============================================================================


def respond(
    status: int, body: Any = None, **kwargs: Any
) -> Callable[[httpx.Request], httpx.Response]:
    """Script item producing a fresh response for every request."""

    def _respond(request: httpx.Request) -> httpx.Response:
        del request
        if body is None:
            return httpx.Response(status, **kwargs)
        return httpx.Response(status, json=body, **kwargs)

    return _respond


@dataclass
class AnalysisServiceStub:
    """Scripted analysis service.

    Each request consumes the next scripted item; the last item repeats.
    Items may be responses, exceptions to raise, or callables of the request.
    """

    script: list[Any] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return item(request)

    def client(self, *, retry: RetryPolicy = FAST_RETRY, **kwargs: Any) -> AnalysisClient:
        return AnalysisClient(
            BASE_URL,
            token=TEST_TOKEN,
            retry=retry,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            **kwargs,
        )


@dataclass
class FakeAdapter:
    """Chat-only model adapter double. Records every call."""

    reply: ModelReply = field(default_factory=lambda: ModelReply(text="ok"))
    error: Exception | None = None
    delay_s: float = 0.0
    chat_calls: list[dict[str, Any]] = field(default_factory=list)

    async def chat(
        self, system: str, user_message: str, *, request_id: str, timeout_s: float
    ) -> ModelReply:
        self.chat_calls.append(
            {"system": system, "user_message": user_message, "request_id": request_id}
        )
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self.reply


@dataclass
class FakeToolAdapter(FakeAdapter):
    """Adapter double that also supports tool calling."""

    tool_reply: ModelReply = field(default_factory=lambda: ModelReply(text="Sure."))
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    async def chat_with_tools(
        self,
        system: str,
        messages: list[dict[str, str]],
        tools: list[Any],
        *,
        request_id: str,
        timeout_s: float,
    ) -> ModelReply:
        self.tool_calls.append(
            {
                "system": system,
                "messages": messages,
                "tools": [t.name for t in tools],
                "request_id": request_id,
            }
        )
        if self.error is not None:
            raise self.error
        return self.tool_reply

    @property
    def total_calls(self) -> int:
        return len(self.chat_calls) + len(self.tool_calls)


@dataclass
class FakeDrafter:
    draft_result: GraphDraft
    briefs: list[str] = field(default_factory=list)

    async def draft(self, brief: str, *, request_id: str) -> GraphDraft:
        del request_id
        self.briefs.append(brief)
        return self.draft_result


@dataclass
class FakeEditor:
    edit_result: GraphEdit
    descriptions: list[str] = field(default_factory=list)

    async def edit(
        self, context: ConversationContext, description: str, *, request_id: str
    ) -> GraphEdit:
        del context, request_id
        self.descriptions.append(description)
        return self.edit_result


class FailingAssembler:
    """Context assembler that always raises."""

    async def assemble(
        self, context: ConversationContext, message: str
    ) -> AssembledContext:
        raise RuntimeError("context fabric unavailable")


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture
def graph() -> dict[str, Any]:
    return {
        "nodes": [
            {"id": "goal_revenue", "kind": "goal", "label": "Revenue"},
            {"id": "opt_a", "kind": "option", "label": "Raise price"},
            {"id": "opt_b", "kind": "option", "label": "Hold price"},
            {"id": "fac_demand", "kind": "factor", "label": "Demand"},
        ],
        "edges": [
            {"from": "opt_a", "to": "fac_demand"},
            {"from": "fac_demand", "to": "goal_revenue"},
        ],
    }


@pytest.fixture
def run_success_body() -> dict[str, Any]:
    return {
        "meta": {"seed_used": 42, "n_samples": 1000, "response_hash": "resp-abc"},
        "results": [
            {"option_id": "opt_a", "option_label": "Raise price", "win_probability": 0.62},
            {"option_id": "opt_b", "option_label": "Hold price", "win_probability": 0.38},
        ],
        "fact_objects": [
            {"fact_id": "f1", "fact_type": "sensitivity", "value": 0.4},
            {"fact_id": "f2", "fact_type": "sensitivity", "value": 0.1},
            {"fact_id": "f3", "fact_type": "robustness", "value": "high"},
        ],
        "review_cards": [{"title": "Evidence priority", "items": ["Demand"]}],
    }


@pytest.fixture
def make_context(graph: dict[str, Any]) -> Callable[..., ConversationContext]:
    """Build a context; pass ``graph=None`` to omit the graph."""

    def _make(**overrides: Any) -> ConversationContext:
        values: dict[str, Any] = {"scenario_id": "scn-1", "graph": graph}
        values.update(overrides)
        return ConversationContext(**values)

    return _make


@pytest.fixture
def make_request(
    make_context: Callable[..., ConversationContext],
) -> Callable[..., TurnRequest]:
    counter = {"n": 0}

    def _make(
        message: str = "hello",
        *,
        context: ConversationContext | None = None,
        client_turn_id: str | None = None,
        scenario_id: str = "scn-1",
        **kwargs: Any,
    ) -> TurnRequest:
        counter["n"] += 1
        return TurnRequest(
            message=message,
            context=context if context is not None else make_context(),
            scenario_id=scenario_id,
            client_turn_id=client_turn_id or f"turn-{counter['n']}",
            **kwargs,
        )

    return _make


@pytest.fixture
def framing_with_goal() -> Framing:
    return Framing(stage="evaluate", goal="Grow revenue")


@pytest.fixture
def analysis_inputs() -> AnalysisInputs:
    return AnalysisInputs(
        options=(
            AnalysisOption(option_id="opt_a", label="Raise price"),
            AnalysisOption(option_id="opt_b", label="Hold price"),
        ),
        seed=7,
        n_samples=500,
    )


@pytest.fixture
def config() -> Config:
    return Config(
        analysis_base_url=BASE_URL,
        analysis_token=TEST_TOKEN,
        turn_budget_s=60.0,
        model_timeout_s=5.0,
        ack_timeout_s=1.0,
        retry=FAST_RETRY,
    )


@pytest.fixture
def service() -> AnalysisServiceStub:
    return AnalysisServiceStub()


@pytest.fixture
def fake_adapter() -> FakeToolAdapter:
    return FakeToolAdapter()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_deliberate_env(monkeypatch):
    """Clear DELIBERATE_* variables so configuration resolves from defaults."""
    for key in list(os.environ.keys()):
        if key.startswith("DELIBERATE_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
