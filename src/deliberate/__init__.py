"""Deliberate: turn dispatch and resilient analysis calls for decision conversations.

Public API:
    - TurnHandler: handle one turn and return ``TurnResult``
    - parse_turn_request(): validate a raw request body
    - AnalysisClient: retried, budget-aware client for the analysis service
    - IdempotencyCache: replay finished turns, coalesce duplicates
    - resolve_intent(): deterministic command routing
    - Config: configuration dataclass
"""

from __future__ import annotations

import logging

from deliberate.adapters import (
    GraphDraft,
    GraphEdit,
    ModelReply,
    ToolCall,
    ToolDefinition,
)
from deliberate.analysis import (
    AnalysisClient,
    CallOptions,
    PatchFeatureDisabled,
    PatchRejection,
    PatchResult,
    PatchSuccess,
    RunResult,
)
from deliberate.blocks import Block
from deliberate.config import Config
from deliberate.context import AssembledContext, SimpleContextAssembler
from deliberate.errors import (
    AnalysisError,
    AnalysisTimeoutError,
    AnalysisTransportError,
    ConfigurationError,
    ContextTooLargeError,
    DeliberateError,
    ModelError,
    PayloadError,
    RequestValidationError,
    ToolExecutionError,
)
from deliberate.idempotency import IdempotencyCache
from deliberate.intent import IntentDecision, resolve_intent
from deliberate.request import parse_turn_request
from deliberate.retry import RetryPolicy, TurnBudget
from deliberate.turns import TurnHandler
from deliberate.types import (
    ConversationContext,
    Envelope,
    TurnRequest,
    TurnResult,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("deliberate-orchestrator")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("deliberate").addHandler(logging.NullHandler())


def create_turn_handler(
    config: Config | None = None, **collaborators: object
) -> TurnHandler:
    """Build a ``TurnHandler`` with an analysis client derived from *config*.

    Extra keyword arguments (``adapter``, ``context_assembler``, ``drafter``,
    ``editor``, ``cache``) are passed straight to ``TurnHandler``. The handler
    owns the client it is given here; close it with ``aclose()`` or
    ``async with``.
    """
    config = config or Config()
    client = AnalysisClient.from_config(config)
    return TurnHandler(  # type: ignore[arg-type]
        config=config, client=client, owns_client=True, **collaborators
    )


__all__ = [
    "AnalysisClient",
    "AnalysisError",
    "AnalysisTimeoutError",
    "AnalysisTransportError",
    "AssembledContext",
    "Block",
    "CallOptions",
    "Config",
    "ConfigurationError",
    "ContextTooLargeError",
    "ConversationContext",
    "DeliberateError",
    "Envelope",
    "GraphDraft",
    "GraphEdit",
    "IdempotencyCache",
    "IntentDecision",
    "ModelError",
    "ModelReply",
    "PatchFeatureDisabled",
    "PatchRejection",
    "PatchResult",
    "PatchSuccess",
    "PayloadError",
    "RequestValidationError",
    "RetryPolicy",
    "RunResult",
    "SimpleContextAssembler",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutionError",
    "TurnBudget",
    "TurnHandler",
    "TurnRequest",
    "TurnResult",
    "create_turn_handler",
    "parse_turn_request",
    "resolve_intent",
]
