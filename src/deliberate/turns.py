"""Turn handler: route one turn, dispatch its tool, and return an envelope.

Flow for a turn:

1. Replay a cached envelope for a known ``(scenario_id, client_turn_id)``,
   or join the in-flight submission of the same pair.
2. Handle UI system events, which never go through intent routing.
3. Ask the intent gate. A deterministic tool whose prerequisites hold runs
   directly; everything else goes through the model with tool definitions.
4. Assemble the envelope and store it before returning.

``handle_turn`` never raises (cancellation aside): failures become error
envelopes with an explicit HTTP status.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
import time
from typing import TYPE_CHECKING, Any
import uuid

from deliberate.adapters import call_model, supports_tools
from deliberate.analysis import (
    CallOptions,
    PatchFeatureDisabled,
    PatchRejection,
    PatchSuccess,
)
from deliberate.blocks import create_commentary_block, create_review_card_block
from deliberate.config import Config
from deliberate.context import assemble_with_fallback, hash_context
from deliberate.envelope import (
    assemble_envelope,
    build_turn_plan,
    orchestrator_error_from_exception,
)
from deliberate.errors import (
    ContextTooLargeError,
    DeliberateError,
    ToolExecutionError,
)
from deliberate.idempotency import IdempotencyCache
from deliberate.intent import resolve_intent
from deliberate.retry import TurnBudget
from deliberate.tools import (
    TOOL_DEFINITIONS,
    TOOL_HANDLERS,
    ToolOutcome,
    ToolRuntime,
    prerequisites_met,
)
from deliberate.types import TurnResult, http_status_for_error

if TYPE_CHECKING:
    from collections.abc import Mapping

    from deliberate.adapters import (
        GraphDrafter,
        GraphEditor,
        ModelAdapter,
        ModelReply,
    )
    from deliberate.analysis import AnalysisClient
    from deliberate.blocks import Block
    from deliberate.context import ContextAssembler
    from deliberate.types import (
        Envelope,
        Lineage,
        Routing,
        SuggestedAction,
        SystemEvent,
        TurnRequest,
    )

logger = logging.getLogger(__name__)

ACK_FALLBACK_TEXT = "Model updated."
_ACK_SYSTEM_PROMPT = (
    "The user just edited their decision model directly. Acknowledge the change "
    "in one short, friendly sentence. Do not ask questions."
)


async def _propagate_abort(source: asyncio.Event, target: asyncio.Event) -> None:
    await source.wait()
    target.set()


class TurnHandler:
    """Orchestrates conversational turns, one dispatch per scenario and turn id.

    All collaborators are injected. ``client`` is *None* when no analysis
    service is configured; ``adapter`` is *None* when no model is available.
    With ``owns_client=True`` the handler closes ``client`` in ``aclose()``.
    """

    def __init__(
        self,
        *,
        config: Config | None = None,
        client: AnalysisClient | None = None,
        adapter: ModelAdapter | None = None,
        cache: IdempotencyCache | None = None,
        context_assembler: ContextAssembler | None = None,
        drafter: GraphDrafter | None = None,
        editor: GraphEditor | None = None,
        owns_client: bool = False,
    ) -> None:
        self._config = config or Config()
        self._client = client
        self._owns_client = owns_client
        self._adapter = adapter
        self._cache = cache or IdempotencyCache.from_config(self._config)
        self._assembler = context_assembler
        self._drafter = drafter
        self._editor = editor

    @property
    def cache(self) -> IdempotencyCache:
        return self._cache

    async def aclose(self) -> None:
        if self._client is None or not self._owns_client:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Analysis client cleanup failed: %s", exc)

    async def __aenter__(self) -> TurnHandler:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def handle_turn(
        self,
        request: TurnRequest,
        request_id: str,
        *,
        abort: asyncio.Event | None = None,
    ) -> TurnResult:
        """Handle one turn and return ``TurnResult(http_status, envelope)``."""
        key = (request.scenario_id, request.client_turn_id)
        cached = self._cache.get(key)
        if cached is not None:
            logger.info(
                "Replaying cached turn %s in %s [%s]",
                request.client_turn_id,
                request.scenario_id,
                request_id,
            )
            return TurnResult(http_status_for_error(cached.get("error")), cached)

        envelope = await self._cache.run_once(
            key, lambda: self._guarded_turn(request, request_id, abort)
        )
        return TurnResult(http_status_for_error(envelope.get("error")), envelope)

    async def _guarded_turn(
        self,
        request: TurnRequest,
        request_id: str,
        external_abort: asyncio.Event | None,
    ) -> Envelope:
        turn_id = str(uuid.uuid4())
        budget = TurnBudget.start(self._config.turn_budget_s)

        # Fires on budget expiry or when the caller aborts, whichever is first.
        abort = asyncio.Event()
        loop = asyncio.get_running_loop()
        timer = loop.call_later(budget.budget_s, abort.set)
        linker: asyncio.Task[None] | None = None
        if external_abort is not None:
            if external_abort.is_set():
                abort.set()
            else:
                linker = asyncio.ensure_future(_propagate_abort(external_abort, abort))

        opts = CallOptions(budget=budget, abort=abort)
        try:
            return await self._dispatch(request, request_id, turn_id, opts)
        except Exception as exc:
            err = orchestrator_error_from_exception(exc)
            if isinstance(exc, DeliberateError):
                logger.warning("Turn %s failed [%s]: %s", turn_id, request_id, exc)
            else:
                logger.error(
                    "Unexpected failure in turn %s [%s]",
                    turn_id,
                    request_id,
                    exc_info=True,
                )
            return assemble_envelope(
                turn_id=turn_id,
                context=request.context,
                lineage={"context_hash": hash_context(request.context)},
                error=err,
            )
        finally:
            timer.cancel()
            if linker is not None:
                linker.cancel()

    async def _dispatch(
        self,
        request: TurnRequest,
        request_id: str,
        turn_id: str,
        opts: CallOptions,
    ) -> Envelope:
        if request.system_event is not None:
            return await self._handle_system_event(
                request, request.system_event, request_id, turn_id, opts
            )

        decision = resolve_intent(request.message)
        if decision.tool is not None:
            if prerequisites_met(decision.tool, request.context):
                logger.info(
                    "Deterministic dispatch of %s [%s]", decision.tool, request_id
                )
                return await self._run_tool(
                    decision.tool,
                    {},
                    request,
                    request_id=request_id,
                    turn_id=turn_id,
                    opts=opts,
                    routing="deterministic",
                    context_hash=hash_context(request.context),
                )
            logger.info(
                "Prerequisites for %s not met; routing to model [%s]",
                decision.tool,
                request_id,
            )
        return await self._model_turn(request, request_id, turn_id, opts)

    def _runtime(
        self, request: TurnRequest, request_id: str, turn_id: str, opts: CallOptions
    ) -> ToolRuntime:
        return ToolRuntime(
            request_id=request_id,
            turn_id=turn_id,
            message=request.message,
            call_options=opts,
            model_timeout_s=self._config.model_timeout_s,
            client=self._client,
            adapter=self._adapter,
            drafter=self._drafter,
            editor=self._editor,
        )

    async def _run_tool(
        self,
        tool: str,
        tool_input: Mapping[str, Any],
        request: TurnRequest,
        *,
        request_id: str,
        turn_id: str,
        opts: CallOptions,
        routing: Routing,
        context_hash: str,
        reply: ModelReply | None = None,
        model_blocks: list[Block] | None = None,
    ) -> Envelope:
        """Run one tool and fold its outcome (or failure) into an envelope.

        When the tool was chosen by the model, the model's text, blocks and
        suggestions are merged in.
        """
        handler = TOOL_HANDLERS.get(tool)
        runtime = self._runtime(request, request_id, turn_id, opts)
        started = time.monotonic()
        error = None
        outcome = ToolOutcome()
        try:
            if handler is None:
                raise ToolExecutionError(
                    f"Unknown tool {tool!r}", tool=tool, recoverable=False
                )
            outcome = await handler(request.context, runtime, tool_input)
        except Exception as exc:
            error = orchestrator_error_from_exception(exc, tool=tool)
            logger.warning(
                "Tool %s failed [%s]: %s (%s)",
                tool,
                request_id,
                error.get("code"),
                type(exc).__name__,
            )
        latency_ms = int((time.monotonic() - started) * 1000)

        lineage: Lineage = {"context_hash": context_hash}
        lineage.update(outcome.lineage)  # type: ignore[typeddict-item]

        assistant_text = outcome.assistant_text
        blocks = list(outcome.blocks)
        suggested: list[SuggestedAction] = list(outcome.suggested_actions)
        warnings = list(outcome.parse_warnings)
        diagnostics = None
        if reply is not None:
            assistant_text = reply.text or assistant_text
            blocks += model_blocks or []
            suggested += list(reply.suggested_actions)
            warnings += list(reply.parse_warnings)
            diagnostics = reply.diagnostics

        return assemble_envelope(
            turn_id=turn_id,
            context=request.context,
            lineage=lineage,
            assistant_text=assistant_text,
            blocks=blocks,
            turn_plan=build_turn_plan(tool, routing, latency_ms),
            suggested_actions=suggested,
            analysis_response=outcome.analysis_response,
            error=error,
            diagnostics=diagnostics,
            parse_warnings=warnings,
            include_debug=bool(self._config.include_debug),
        )

    # --- Model-mediated path ---

    def _model_blocks(
        self, reply: ModelReply, turn_id: str
    ) -> tuple[list[Block], list[str]]:
        blocks: list[Block] = []
        warnings: list[str] = []
        for raw in reply.blocks:
            kind = raw.get("type")
            if kind == "commentary" and isinstance(raw.get("text"), str):
                blocks.append(
                    create_commentary_block(
                        raw["text"], turn_id, "assistant", raw.get("supporting_refs")
                    )
                )
            elif kind == "review_card" and isinstance(raw.get("card"), dict):
                blocks.append(
                    create_review_card_block(raw["card"], turn_id, trigger="assistant")
                )
            else:
                warnings.append(f"Ignored model block of type {kind!r}")
        return blocks, warnings

    async def _model_turn(
        self,
        request: TurnRequest,
        request_id: str,
        turn_id: str,
        opts: CallOptions,
    ) -> Envelope:
        adapter = self._adapter
        if adapter is None:
            raise ToolExecutionError(
                "No model adapter is configured", recoverable=False
            )

        assembled = await assemble_with_fallback(
            self._assembler, request.context, request.message, request_id=request_id
        )
        if assembled.size_chars() > self._config.max_context_chars:
            raise ContextTooLargeError(
                f"Conversation context is too large ({assembled.size_chars()} chars)",
                hint="Raise DELIBERATE_MAX_CONTEXT_CHARS or trim the history.",
            )
        context_hash = assembled.context_hash()
        timeout_s = self._config.model_timeout_s

        if supports_tools(adapter):
            reply = await call_model(
                adapter.chat_with_tools(  # type: ignore[attr-defined]
                    assembled.system_prompt,
                    list(assembled.messages),
                    list(TOOL_DEFINITIONS),
                    request_id=request_id,
                    timeout_s=timeout_s,
                ),
                timeout_s=timeout_s,
            )
        else:
            reply = await call_model(
                adapter.chat(
                    assembled.system_prompt,
                    request.message,
                    request_id=request_id,
                    timeout_s=timeout_s,
                ),
                timeout_s=timeout_s,
            )

        model_blocks, block_warnings = self._model_blocks(reply, turn_id)
        if block_warnings:
            reply = replace(
                reply, parse_warnings=reply.parse_warnings + tuple(block_warnings)
            )

        if reply.tool_calls:
            first = reply.tool_calls[0]
            if len(reply.tool_calls) > 1:
                logger.info(
                    "Model requested %d tools; dispatching only %s [%s]",
                    len(reply.tool_calls),
                    first.name,
                    request_id,
                )
            return await self._run_tool(
                first.name,
                first.input,
                request,
                request_id=request_id,
                turn_id=turn_id,
                opts=opts,
                routing="llm",
                context_hash=context_hash,
                reply=reply,
                model_blocks=model_blocks,
            )

        return assemble_envelope(
            turn_id=turn_id,
            context=request.context,
            lineage={"context_hash": context_hash},
            assistant_text=reply.text,
            blocks=model_blocks,
            turn_plan=build_turn_plan(None, "llm"),
            suggested_actions=reply.suggested_actions,
            diagnostics=reply.diagnostics,
            parse_warnings=reply.parse_warnings,
            include_debug=bool(self._config.include_debug),
        )

    # --- System events ---

    async def _handle_system_event(
        self,
        request: TurnRequest,
        event: SystemEvent,
        request_id: str,
        turn_id: str,
        opts: CallOptions,
    ) -> Envelope:
        context_hash = hash_context(request.context)
        logger.info("System event %s [%s]", event.type, request_id)

        match event.type:
            case "direct_analysis_run":
                return await self._run_tool(
                    "run_analysis",
                    event.payload,
                    request,
                    request_id=request_id,
                    turn_id=turn_id,
                    opts=opts,
                    routing="deterministic",
                    context_hash=context_hash,
                )
            case "patch_accepted":
                lineage, warnings = await self._revalidate_accepted_patch(
                    request, event, request_id, opts
                )
                lineage["context_hash"] = context_hash
                return assemble_envelope(
                    turn_id=turn_id,
                    context=request.context,
                    lineage=lineage,
                    turn_plan=build_turn_plan(None, "deterministic"),
                    parse_warnings=warnings,
                )
            case "direct_graph_edit":
                text = await self._acknowledge_edit(event, request_id)
                return assemble_envelope(
                    turn_id=turn_id,
                    context=request.context,
                    lineage={"context_hash": context_hash},
                    assistant_text=text,
                    turn_plan=build_turn_plan(None, "deterministic"),
                )
            case _:
                # patch_dismissed and feedback_submitted only need recording.
                return assemble_envelope(
                    turn_id=turn_id,
                    context=request.context,
                    lineage={"context_hash": context_hash},
                    turn_plan=build_turn_plan(None, "deterministic"),
                )

    async def _revalidate_accepted_patch(
        self,
        request: TurnRequest,
        event: SystemEvent,
        request_id: str,
        opts: CallOptions,
    ) -> tuple[Lineage, list[str]]:
        """Validate an accepted patch for lineage. Failures only add warnings."""
        lineage: Lineage = {}
        warnings: list[str] = []
        operations = event.payload.get("operations")
        graph = request.context.graph
        if self._client is None:
            warnings.append(
                "No analysis service is configured; graph_hash was not computed"
            )
            return lineage, warnings
        if graph is None:
            warnings.append("No graph in context; graph_hash was not computed")
            return lineage, warnings
        if not operations:
            warnings.append(
                "Accepted patch carried no operations; graph_hash was not computed"
            )
            return lineage, warnings

        try:
            result = await self._client.validate_patch(
                {
                    "graph": graph,
                    "operations": operations,
                    "scenario_id": request.scenario_id,
                },
                request_id,
                opts,
            )
        except DeliberateError as e:
            logger.warning(
                "Post-accept validation failed [%s]: %s", request_id, type(e).__name__
            )
            warnings.append(f"Accepted patch could not be re-validated: {e}")
            return lineage, warnings

        match result:
            case PatchSuccess(graph_hash=graph_hash, warnings=extra):
                if graph_hash is not None:
                    lineage["graph_hash"] = graph_hash
                warnings.extend(extra)
            case PatchRejection(message=message):
                warnings.append(f"Accepted patch failed validation: {message}")
            case PatchFeatureDisabled():
                warnings.append(
                    "Patch validation is not enabled on the analysis service; "
                    "graph_hash was not computed"
                )
        return lineage, warnings

    async def _acknowledge_edit(self, event: SystemEvent, request_id: str) -> str:
        if self._adapter is None:
            return ACK_FALLBACK_TEXT
        summary = event.payload.get("summary") or event.payload.get("description")
        user_message = (
            f"I changed the model: {summary}" if summary else "I changed the model."
        )
        try:
            reply = await call_model(
                self._adapter.chat(
                    _ACK_SYSTEM_PROMPT,
                    user_message,
                    request_id=request_id,
                    timeout_s=self._config.ack_timeout_s,
                ),
                timeout_s=self._config.ack_timeout_s,
            )
        except DeliberateError as e:
            logger.info("Edit acknowledgement fell back [%s]: %s", request_id, e)
            return ACK_FALLBACK_TEXT
        text = (reply.text or "").strip()
        return text or ACK_FALLBACK_TEXT
