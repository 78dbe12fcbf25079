"""Core data types for turns, contexts, and response envelopes.

Requests and contexts are frozen dataclasses. Envelopes are plain
JSON-ready ``TypedDict`` data so they can be cached and serialized verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

DecisionStage = Literal["frame", "ideate", "evaluate", "decide", "optimise"]

ToolName = Literal[
    "run_analysis",
    "draft_graph",
    "generate_brief",
    "edit_graph",
    "explain_results",
    "undo_patch",
]

Routing = Literal["deterministic", "llm"]

SystemEventType = Literal[
    "patch_accepted",
    "patch_dismissed",
    "feedback_submitted",
    "direct_graph_edit",
    "direct_analysis_run",
]

ErrorCode = Literal[
    "TIMEOUT",
    "TOOL_EXECUTION_FAILED",
    "VALIDATION_REJECTED",
    "CONTEXT_TOO_LARGE",
    "INVALID_REQUEST",
    "UNKNOWN",
]

ERROR_HTTP_STATUS: dict[str, int] = {
    "TIMEOUT": 504,
    "TOOL_EXECUTION_FAILED": 502,
    "VALIDATION_REJECTED": 422,
    "CONTEXT_TOO_LARGE": 413,
    "INVALID_REQUEST": 400,
    "UNKNOWN": 500,
}


# --- Request side ---


@dataclass(frozen=True)
class Framing:
    """Where the user is in the decision process."""

    stage: DecisionStage = "frame"
    goal: str | None = None
    constraints: tuple[str, ...] = ()
    brief_text: str | None = None
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class AnalysisOption:
    option_id: str
    label: str | None = None
    interventions: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AnalysisInputs:
    """Caller-supplied run inputs that override what the graph implies."""

    options: tuple[AnalysisOption, ...] = ()
    seed: int | None = None
    n_samples: int | None = None


@dataclass(frozen=True)
class ConversationContext:
    """Caller-owned conversation state. The handler only reads it.

    ``graph`` and ``analysis_response`` are opaque JSON objects owned by the
    decision-graph model and the analysis service respectively.
    """

    scenario_id: str
    messages: tuple[ConversationMessage, ...] = ()
    graph: dict[str, Any] | None = None
    analysis_response: dict[str, Any] | None = None
    framing: Framing | None = None
    event_log_summary: str | None = None
    selected_elements: tuple[str, ...] = ()
    analysis_inputs: AnalysisInputs | None = None


@dataclass(frozen=True)
class SystemEvent:
    """A UI action reported alongside (or instead of) a user message."""

    type: SystemEventType
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TurnRequest:
    message: str
    context: ConversationContext
    scenario_id: str
    #: Idempotency key; stable across client retries of one user action.
    client_turn_id: str
    system_event: SystemEvent | None = None


# --- Response side ---


class Provenance(TypedDict):
    trigger: str
    turn_id: str
    timestamp: str


class SuggestedAction(TypedDict):
    label: str
    prompt: str
    role: Literal["facilitator", "challenger"]


class Lineage(TypedDict, total=False):
    context_hash: str
    response_hash: str
    seed_used: int
    n_samples: int
    graph_hash: str


class TurnPlan(TypedDict, total=False):
    selected_tool: str | None
    routing: Routing
    long_running: bool
    tool_latency_ms: int


class OrchestratorError(TypedDict, total=False):
    code: ErrorCode
    message: str
    tool: str
    recoverable: bool
    suggested_retry: str


class Envelope(TypedDict, total=False):
    """Response for one turn. Immutable once returned."""

    turn_id: str
    assistant_text: str | None
    blocks: list[dict[str, Any]]
    suggested_actions: list[SuggestedAction]
    analysis_response: dict[str, Any]
    lineage: Lineage
    turn_plan: TurnPlan
    stage_indicator: DecisionStage
    stage_label: str
    error: OrchestratorError
    diagnostics: str
    parse_warnings: list[str]


@dataclass(frozen=True)
class TurnResult:
    """What the route layer sends back: a status plus the envelope."""

    http_status: int
    envelope: Envelope


def http_status_for_error(error: OrchestratorError | None) -> int:
    """Map an envelope error to its HTTP status (200 when there is none)."""
    if not error:
        return 200
    return ERROR_HTTP_STATUS.get(error.get("code", "UNKNOWN"), 500)
