"""Envelope assembly and error translation.

Everything a turn returns goes through ``assemble_envelope``; every
exception a turn raises goes through ``orchestrator_error_from_exception``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from deliberate._http import is_client_error
from deliberate.errors import (
    AnalysisError,
    AnalysisTimeoutError,
    ContextTooLargeError,
    DeliberateError,
    ModelError,
    PayloadError,
    RequestValidationError,
    ToolExecutionError,
    _walk_exception_chain,
)
from deliberate.tools import LONG_RUNNING_TOOLS

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from deliberate.blocks import Block
    from deliberate.types import (
        ConversationContext,
        DecisionStage,
        Envelope,
        Lineage,
        OrchestratorError,
        Routing,
        SuggestedAction,
        TurnPlan,
    )

STAGE_LABELS: dict[str, str] = {
    "frame": "Framing the decision",
    "ideate": "Exploring options",
    "evaluate": "Evaluating options",
    "decide": "Making the decision",
    "optimise": "Optimising the plan",
}

_GENERIC_FAILURE = "Something went wrong while handling this turn."


def build_turn_plan(
    tool: str | None, routing: Routing, latency_ms: int | None = None
) -> TurnPlan:
    plan: TurnPlan = {
        "selected_tool": tool,
        "routing": routing,
        "long_running": tool in LONG_RUNNING_TOOLS,
    }
    if latency_ms is not None:
        plan["tool_latency_ms"] = latency_ms
    return plan


def orchestrator_error_from_exception(
    exc: BaseException, *, tool: str | None = None
) -> OrchestratorError:
    """Translate any exception into the envelope's error shape.

    Unknown exceptions get a generic message; their text may hold internals.
    """
    if not isinstance(exc, DeliberateError):
        # Collaborators may wrap our errors; classify by the innermost one.
        for cause in _walk_exception_chain(exc):
            if isinstance(cause, DeliberateError):
                exc = cause
                break

    err: OrchestratorError
    if isinstance(exc, ToolExecutionError):
        err = {
            "code": exc.code,  # type: ignore[typeddict-item]
            "message": str(exc),
            "recoverable": exc.recoverable,
        }
        tool = exc.tool or tool
        if exc.suggested_retry:
            err["suggested_retry"] = exc.suggested_retry
    elif isinstance(exc, AnalysisTimeoutError) or (
        isinstance(exc, ModelError) and exc.timed_out
    ):
        err = {
            "code": "TIMEOUT",
            "message": str(exc),
            "recoverable": True,
            "suggested_retry": "Try again in a moment.",
        }
    elif isinstance(exc, AnalysisError) and is_client_error(exc.status_code):
        err = {"code": "VALIDATION_REJECTED", "message": str(exc), "recoverable": True}
    elif isinstance(exc, (AnalysisError, ModelError)):
        err = {
            "code": "TOOL_EXECUTION_FAILED",
            "message": str(exc),
            "recoverable": True,
            "suggested_retry": "Try again in a moment.",
        }
    elif isinstance(exc, PayloadError):
        err = {"code": "TOOL_EXECUTION_FAILED", "message": str(exc), "recoverable": False}
    elif isinstance(exc, ContextTooLargeError):
        err = {
            "code": "CONTEXT_TOO_LARGE",
            "message": str(exc),
            "recoverable": True,
            "suggested_retry": "Start a new conversation or shorten the message.",
        }
    elif isinstance(exc, RequestValidationError):
        err = {"code": "INVALID_REQUEST", "message": str(exc), "recoverable": False}
    else:
        err = {"code": "UNKNOWN", "message": _GENERIC_FAILURE, "recoverable": False}
    if tool is not None:
        err["tool"] = tool
    return err


def assemble_envelope(
    *,
    turn_id: str,
    context: ConversationContext | None,
    lineage: Lineage,
    assistant_text: str | None = None,
    blocks: Iterable[Block] = (),
    turn_plan: TurnPlan | None = None,
    suggested_actions: Iterable[SuggestedAction] = (),
    analysis_response: Mapping[str, Any] | None = None,
    error: OrchestratorError | None = None,
    diagnostics: str | None = None,
    parse_warnings: Iterable[str] = (),
    include_debug: bool = False,
) -> Envelope:
    """Build the JSON-ready envelope for a turn.

    ``stage_indicator`` and ``stage_label`` follow the caller's framing;
    diagnostics are only attached when ``include_debug`` is set. Parse
    warnings are always attached when present.
    """
    envelope: Envelope = {
        "turn_id": turn_id,
        "assistant_text": assistant_text,
        "blocks": [b.to_dict() for b in blocks],
        "lineage": dict(lineage),  # type: ignore[typeddict-item]
    }
    actions = list(suggested_actions)
    if actions:
        envelope["suggested_actions"] = actions
    if analysis_response is not None:
        envelope["analysis_response"] = dict(analysis_response)
    if turn_plan is not None:
        envelope["turn_plan"] = turn_plan

    stage: DecisionStage = "frame"
    if context is not None and context.framing is not None:
        stage = context.framing.stage
    envelope["stage_indicator"] = stage
    envelope["stage_label"] = STAGE_LABELS[stage]

    if error is not None:
        envelope["error"] = error
    if include_debug and diagnostics:
        envelope["diagnostics"] = diagnostics
    warnings = list(parse_warnings)
    if warnings:
        envelope["parse_warnings"] = warnings
    return envelope
