"""Tool handlers, definitions and dispatch prerequisites.

Each handler takes the caller's context, a ``ToolRuntime`` with the turn's
collaborators and ids, and the tool input. It returns a ``ToolOutcome`` or
raises; the turn handler turns exceptions into error envelopes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import TYPE_CHECKING, Any

from deliberate.adapters import ToolDefinition, call_model
from deliberate.analysis import PatchFeatureDisabled, PatchRejection, PatchSuccess
from deliberate.blocks import (
    Block,
    create_brief_block,
    create_commentary_block,
    create_fact_block,
    create_graph_patch_block,
    create_review_card_block,
)
from deliberate.errors import ModelError, ToolExecutionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from deliberate.adapters import GraphDrafter, GraphEditor, ModelAdapter
    from deliberate.analysis import AnalysisClient, CallOptions
    from deliberate.types import ConversationContext, SuggestedAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRuntime:
    """Collaborators and identifiers for one tool invocation."""

    request_id: str
    turn_id: str
    message: str
    call_options: CallOptions
    model_timeout_s: float
    client: AnalysisClient | None = None
    adapter: ModelAdapter | None = None
    drafter: GraphDrafter | None = None
    editor: GraphEditor | None = None


@dataclass
class ToolOutcome:
    blocks: list[Block] = field(default_factory=list)
    assistant_text: str | None = None
    analysis_response: dict[str, Any] | None = None
    lineage: dict[str, Any] = field(default_factory=dict)
    suggested_actions: list[SuggestedAction] = field(default_factory=list)
    parse_warnings: list[str] = field(default_factory=list)


# --- Prerequisites ---


def _has_graph(ctx: ConversationContext) -> bool:
    return ctx.graph is not None


def _has_analysis(ctx: ConversationContext) -> bool:
    return ctx.analysis_response is not None


def _has_draft_material(ctx: ConversationContext) -> bool:
    f = ctx.framing
    return f is not None and bool(f.goal or f.brief_text or f.options)


#: What must be present in context before a tool may run without the model.
PREREQUISITES: dict[str, Callable[[ConversationContext], bool]] = {
    "run_analysis": _has_graph,
    "explain_results": _has_analysis,
    "edit_graph": _has_graph,
    "generate_brief": lambda ctx: _has_graph(ctx) and _has_analysis(ctx),
    "draft_graph": _has_draft_material,
}

LONG_RUNNING_TOOLS: frozenset[str] = frozenset({"run_analysis", "draft_graph"})


def prerequisites_met(tool: str, context: ConversationContext) -> bool:
    check = PREREQUISITES.get(tool)
    return check(context) if check is not None else True


# --- Shared helpers ---


def _nodes(graph: Mapping[str, Any]) -> list[dict[str, Any]]:
    nodes = graph.get("nodes")
    return [n for n in nodes if isinstance(n, dict)] if isinstance(nodes, list) else []


def _edges(graph: Mapping[str, Any]) -> list[dict[str, Any]]:
    edges = graph.get("edges")
    return [e for e in edges if isinstance(e, dict)] if isinstance(edges, list) else []


def _missing(tool: str, what: str) -> ToolExecutionError:
    return ToolExecutionError(
        f"{what} is not configured", tool=tool, recoverable=False
    )


# --- run_analysis ---


def build_run_payload(
    context: ConversationContext, tool_input: Mapping[str, Any]
) -> dict[str, Any]:
    """Build the run request from the context's graph and analysis inputs.

    Options come from ``analysis_inputs`` when supplied, otherwise from the
    graph's option nodes. The goal is the graph's first goal node.
    """
    graph = context.graph or {}
    inputs = context.analysis_inputs
    if inputs is not None and inputs.options:
        options = [
            {"option_id": o.option_id, "label": o.label, "interventions": o.interventions}
            for o in inputs.options
        ]
    else:
        options = [
            {
                "option_id": n.get("id"),
                "label": n.get("label"),
                "interventions": (n.get("data") or {}).get("interventions", {}),
            }
            for n in _nodes(graph)
            if n.get("kind") == "option"
        ]
    goal_node_id = next(
        (n.get("id") for n in _nodes(graph) if n.get("kind") == "goal"), None
    )

    payload: dict[str, Any] = {
        "graph": context.graph,
        "options": options,
        "goal_node_id": goal_node_id,
        "scenario_id": context.scenario_id,
    }
    seed = tool_input.get("seed", inputs.seed if inputs else None)
    n_samples = tool_input.get("n_samples", inputs.n_samples if inputs else None)
    if isinstance(seed, int):
        payload["seed"] = seed
    if isinstance(n_samples, int):
        payload["n_samples"] = n_samples
    return payload


def _analysis_blocks(
    body: Mapping[str, Any],
    turn_id: str,
    response_hash: str | None,
    seed: int | None,
) -> list[Block]:
    blocks: list[Block] = []
    results = body.get("results")
    if isinstance(results, list) and results:
        blocks.append(
            create_fact_block(
                {"fact_type": "option_comparison", "facts": results},
                turn_id,
                response_hash,
                seed,
            )
        )

    by_type: dict[str, list[Any]] = {}
    fact_objects = body.get("fact_objects")
    if isinstance(fact_objects, list):
        for fact in fact_objects:
            if isinstance(fact, dict) and isinstance(fact.get("fact_type"), str):
                by_type.setdefault(fact["fact_type"], []).append(fact)
    for fact_type, facts in by_type.items():
        blocks.append(
            create_fact_block(
                {"fact_type": fact_type, "facts": facts}, turn_id, response_hash, seed
            )
        )

    cards = body.get("review_cards")
    if isinstance(cards, list):
        blocks.extend(
            create_review_card_block(card, turn_id)
            for card in cards
            if isinstance(card, dict)
        )
    return blocks


async def handle_run_analysis(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    if runtime.client is None:
        raise _missing("run_analysis", "Analysis service")
    if context.graph is None:
        raise ToolExecutionError(
            "There is no model to analyse yet.",
            tool="run_analysis",
            recoverable=True,
            suggested_retry="Draft a model first, then run the analysis.",
        )

    payload = build_run_payload(context, tool_input)
    result = await runtime.client.run(payload, runtime.request_id, runtime.call_options)

    lineage: dict[str, Any] = {}
    if result.response_hash is not None:
        lineage["response_hash"] = result.response_hash
    if result.seed_used is not None:
        lineage["seed_used"] = result.seed_used
    if result.n_samples is not None:
        lineage["n_samples"] = result.n_samples

    return ToolOutcome(
        blocks=_analysis_blocks(
            result.body, runtime.turn_id, result.response_hash, result.seed_used
        ),
        analysis_response=result.body,
        lineage=lineage,
        suggested_actions=[
            {
                "label": "Explain the results",
                "prompt": "Explain the results",
                "role": "facilitator",
            },
            {
                "label": "What could change this?",
                "prompt": "What assumptions would change the outcome?",
                "role": "challenger",
            },
        ],
    )


# --- generate_brief ---


async def handle_generate_brief(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    del tool_input
    brief = (context.analysis_response or {}).get("decision_brief")
    if not isinstance(brief, dict) or not brief:
        raise ToolExecutionError(
            "No decision brief is available for these results.",
            tool="generate_brief",
            recoverable=True,
            suggested_retry="Run the analysis again, then ask for the brief.",
        )
    return ToolOutcome(blocks=[create_brief_block(brief, runtime.turn_id)])


# --- draft_graph ---


def _draft_operations(graph: Mapping[str, Any]) -> list[dict[str, Any]]:
    ops = [
        {"op": "add_node", "path": f"/nodes/{n.get('id')}", "value": n}
        for n in _nodes(graph)
    ]
    ops += [
        {
            "op": "add_edge",
            "path": f"/edges/{e.get('from')}->{e.get('to')}",
            "value": e,
        }
        for e in _edges(graph)
    ]
    return ops


async def handle_draft_graph(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    if runtime.drafter is None:
        raise _missing("draft_graph", "Graph drafter")

    framing = context.framing
    brief = tool_input.get("brief")
    if not isinstance(brief, str) or not brief.strip():
        parts: list[str] = []
        if framing is not None:
            parts.extend(p for p in (framing.brief_text, framing.goal) if p)
            if framing.options:
                parts.append("Options: " + "; ".join(framing.options))
        brief = "\n".join(parts) or runtime.message

    draft = await runtime.drafter.draft(brief, request_id=runtime.request_id)
    operations = list(draft.operations) or _draft_operations(draft.graph)
    block = create_graph_patch_block(
        {
            "patch_type": "full_draft",
            "operations": operations,
            "status": "proposed",
            "applied_graph": draft.graph,
            "summary": draft.summary,
            "validation_warnings": list(draft.warnings),
        },
        runtime.turn_id,
        trigger="tool:draft_graph",
    )
    return ToolOutcome(blocks=[block])


# --- edit_graph ---


async def handle_edit_graph(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    if runtime.editor is None:
        raise _missing("edit_graph", "Graph editor")
    if context.graph is None:
        raise ToolExecutionError(
            "There is no model to edit yet.",
            tool="edit_graph",
            recoverable=True,
            suggested_retry="Draft a model first.",
        )

    description = tool_input.get("edit_description")
    if not isinstance(description, str) or not description.strip():
        description = runtime.message
    edit = await runtime.editor.edit(context, description, request_id=runtime.request_id)
    operations = list(edit.operations)
    if not operations:
        raise ToolExecutionError(
            "I couldn't work out what to change in the model.",
            tool="edit_graph",
            recoverable=True,
            suggested_retry="Name the factor or connection you want to change.",
        )

    data: dict[str, Any] = {
        "patch_type": "edit",
        "operations": operations,
        "status": "proposed",
        "summary": edit.summary,
        "validation_warnings": [],
    }
    lineage: dict[str, Any] = {}
    assistant_text = None

    if runtime.client is None:
        data["validation_warnings"].append(
            "Patch was not validated: analysis service not configured"
        )
    else:
        result = await runtime.client.validate_patch(
            {
                "graph": context.graph,
                "operations": operations,
                "scenario_id": context.scenario_id,
            },
            runtime.request_id,
            runtime.call_options,
        )
        match result:
            case PatchSuccess(
                applied_graph=applied, graph_hash=graph_hash, warnings=warnings
            ):
                if applied is not None:
                    data["applied_graph"] = applied
                if graph_hash is not None:
                    data["base_graph_hash"] = graph_hash
                    lineage["graph_hash"] = graph_hash
                data["validation_warnings"].extend(warnings)
            case PatchRejection(code=code, message=message, violations=violations):
                data["status"] = "rejected"
                data["rejection"] = {
                    "reason": "validation_failed",
                    "message": message,
                    "code": code,
                    "violations": list(violations),
                }
                assistant_text = f"I couldn't apply that change: {message}"
            case PatchFeatureDisabled(message=message):
                data["validation_warnings"].append(f"Patch was not validated: {message}")

    return ToolOutcome(
        blocks=[create_graph_patch_block(data, runtime.turn_id)],
        assistant_text=assistant_text,
        lineage=lineage,
    )


# --- explain_results ---

_NUMERIC_TOKEN = re.compile(
    r"(?:approximately |about |around |roughly |~)?"
    r"[$£€]?\d[\d,]*(?:\.\d+)?(?:%|k|m|b)?"
    r"(?:\s*[-–]\s*[$£€]?\d[\d,]*(?:\.\d+)?(?:%|k|m|b)?)?",
    re.IGNORECASE,
)
_YEAR = re.compile(r"(?:19|20)\d{2}")

CONSTRAINT_TENSION_RATIO = 0.7


def strip_ungrounded_numerics(text: str) -> tuple[str, int]:
    """Replace free-hand numbers with ``[value]``. Returns (text, count stripped).

    Four-digit years and single digits survive; they are usually structural.
    """
    stripped = 0

    def _replace(m: re.Match[str]) -> str:
        nonlocal stripped
        core = m.group(0).strip().replace(",", "")
        if _YEAR.fullmatch(core) or (len(core) == 1 and core.isdigit()):
            return m.group(0)
        stripped += 1
        return "[value]"

    return _NUMERIC_TOKEN.sub(_replace, text), stripped


def detect_constraint_tension(analysis: Mapping[str, Any]) -> str | None:
    """Note when constraints are jointly much harder to meet than individually."""
    ca = analysis.get("constraint_analysis")
    if not isinstance(ca, dict):
        return None
    joint = ca.get("joint_probability")
    per = ca.get("per_constraint")
    if not isinstance(joint, (int, float)) or not isinstance(per, list):
        return None
    probs = [
        c["probability"]
        for c in per
        if isinstance(c, dict) and isinstance(c.get("probability"), (int, float))
    ]
    if not probs or joint >= min(probs) * CONSTRAINT_TENSION_RATIO:
        return None
    return (
        f"The constraints appear to be in tension: their joint probability "
        f"({joint * 100:.1f}%) is well below any single constraint's."
    )


def _percent(value: object) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "n/a"
    return f"{value * 100:.1f}%"


def _analysis_summary(analysis: Mapping[str, Any]) -> str:
    parts: list[str] = []
    results = analysis.get("results")
    if isinstance(results, list) and results:
        ranked = ", ".join(
            f"{r.get('option_label', r.get('option_id'))}: "
            f"{_percent(r.get('win_probability'))}"
            for r in results
            if isinstance(r, dict)
        )
        if ranked:
            parts.append(f"Option comparison: {ranked}")
    sensitivity = analysis.get("factor_sensitivity")
    if isinstance(sensitivity, list) and sensitivity:
        top = "; ".join(
            f"{f.get('label')} ({f.get('direction')})"
            for f in sensitivity[:5]
            if isinstance(f, dict)
        )
        parts.append(f"Top drivers: {top}")
    robustness = analysis.get("robustness")
    if isinstance(robustness, dict) and robustness.get("level"):
        parts.append(f"Robustness: {robustness['level']}")
    return "\n".join(parts)


def _supporting_refs(analysis: Mapping[str, Any]) -> list[dict[str, Any]]:
    facts = analysis.get("fact_objects")
    if not isinstance(facts, list):
        return []
    return [
        {"ref_type": "fact", "ref_id": f["fact_id"], "fact_type": f["fact_type"]}
        for f in facts
        if isinstance(f, dict) and f.get("fact_id") and f.get("fact_type")
    ]


async def handle_explain_results(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    if runtime.adapter is None:
        raise _missing("explain_results", "Model adapter")
    analysis = context.analysis_response
    if analysis is None:
        raise ToolExecutionError(
            "No analysis results to explain. Run analysis first.",
            tool="explain_results",
            recoverable=True,
            suggested_retry="Run the analysis first, then ask for an explanation.",
        )

    focus = tool_input.get("focus") if isinstance(tool_input.get("focus"), str) else None
    sections = [
        "Explain these analysis results. Cite only the values given here.",
        "",
        _analysis_summary(analysis),
    ]
    tension = detect_constraint_tension(analysis)
    if tension:
        sections += ["", tension]
    user_message = (
        f"Explain the analysis results, focusing on: {focus}"
        if focus
        else "Explain the analysis results."
    )

    try:
        reply = await call_model(
            runtime.adapter.chat(
                "\n".join(sections),
                user_message,
                request_id=runtime.request_id,
                timeout_s=runtime.model_timeout_s,
            ),
            timeout_s=runtime.model_timeout_s,
        )
    except ModelError as e:
        raise ToolExecutionError(
            f"Failed to generate explanation: {e}",
            tool="explain_results",
            recoverable=True,
            suggested_retry="Try asking for the explanation again.",
        ) from e

    narrative, stripped = strip_ungrounded_numerics(reply.text or "")
    if stripped:
        logger.info(
            "Stripped %d ungrounded numbers from commentary [%s]",
            stripped,
            runtime.request_id,
        )
    block = create_commentary_block(
        narrative, runtime.turn_id, "tool:explain_results", _supporting_refs(analysis)
    )
    return ToolOutcome(blocks=[block])


# --- undo_patch ---


async def handle_undo_patch(
    context: ConversationContext, runtime: ToolRuntime, tool_input: Mapping[str, Any]
) -> ToolOutcome:
    del context, tool_input
    text = (
        "Undo happens in the model editor: use its undo control to revert "
        "the last applied change."
    )
    return ToolOutcome(
        blocks=[create_commentary_block(text, runtime.turn_id, "tool:undo_patch")],
        assistant_text=text,
    )


TOOL_HANDLERS: dict[str, Callable[..., Awaitable[ToolOutcome]]] = {
    "run_analysis": handle_run_analysis,
    "draft_graph": handle_draft_graph,
    "generate_brief": handle_generate_brief,
    "edit_graph": handle_edit_graph,
    "explain_results": handle_explain_results,
    "undo_patch": handle_undo_patch,
}

TOOL_DEFINITIONS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="run_analysis",
        description="Run the decision analysis on the current model and options.",
        input_schema={
            "type": "object",
            "properties": {
                "seed": {"type": "integer"},
                "n_samples": {"type": "integer", "minimum": 1},
            },
        },
    ),
    ToolDefinition(
        name="draft_graph",
        description="Draft a decision model from the user's description of the decision.",
        input_schema={
            "type": "object",
            "properties": {"brief": {"type": "string"}},
        },
    ),
    ToolDefinition(
        name="generate_brief",
        description="Produce the decision brief for the latest analysis.",
        input_schema={"type": "object", "properties": {}},
    ),
    ToolDefinition(
        name="edit_graph",
        description="Propose a change to the decision model.",
        input_schema={
            "type": "object",
            "properties": {"edit_description": {"type": "string"}},
            "required": ["edit_description"],
        },
    ),
    ToolDefinition(
        name="explain_results",
        description="Explain the latest analysis results in plain language.",
        input_schema={
            "type": "object",
            "properties": {"focus": {"type": "string"}},
        },
    ),
    ToolDefinition(
        name="undo_patch",
        description="Explain how to undo the last model change.",
        input_schema={"type": "object", "properties": {}},
    ),
)
