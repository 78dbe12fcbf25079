"""Context assembly for model-mediated turns.

A richer assembler can be plugged in through the ``ContextAssembler``
protocol. When it fails, the turn falls back to ``SimpleContextAssembler``
and the result is tagged ``fallback``, which changes the lineage hash.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import hashlib
import logging
from typing import TYPE_CHECKING, Literal, Protocol

from deliberate.blocks import canonical_json

if TYPE_CHECKING:
    from deliberate.types import ConversationContext

logger = logging.getLogger(__name__)

AssemblyMode = Literal["fabric", "simple", "fallback"]

_CONTEXT_HASH_CHARS = 32
_HISTORY_TURNS = 10


def _hash(value: object) -> str:
    digest = hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
    return digest[:_CONTEXT_HASH_CHARS]


@dataclass(frozen=True)
class AssembledContext:
    system_prompt: str
    messages: tuple[dict[str, str], ...]
    mode: AssemblyMode = "fabric"

    def context_hash(self) -> str:
        """Fingerprint of the prompt actually sent, including how it was built."""
        return _hash(
            {
                "mode": self.mode,
                "system": self.system_prompt,
                "messages": list(self.messages),
            }
        )

    def size_chars(self) -> int:
        return len(self.system_prompt) + sum(
            len(m.get("content", "")) for m in self.messages
        )


def hash_context(context: ConversationContext) -> str:
    """Fingerprint of the caller's context, for turns that skip the model."""
    return _hash({"mode": "deterministic", "context": asdict(context)})


class ContextAssembler(Protocol):
    async def assemble(
        self, context: ConversationContext, message: str
    ) -> AssembledContext:
        """Build the system prompt and message list for a model call."""
        ...


class SimpleContextAssembler:
    """Always-available assembler: a terse state summary plus recent history."""

    def __init__(self, *, history_turns: int = _HISTORY_TURNS) -> None:
        self._history_turns = history_turns

    async def assemble(
        self, context: ConversationContext, message: str
    ) -> AssembledContext:
        lines = ["You are a decision-support assistant.", ""]
        framing = context.framing
        if framing is not None:
            lines.append(f"Stage: {framing.stage}")
            if framing.goal:
                lines.append(f"Goal: {framing.goal}")
            if framing.constraints:
                lines.append("Constraints: " + "; ".join(framing.constraints))
        graph = context.graph
        if graph is not None:
            nodes = graph.get("nodes") if isinstance(graph.get("nodes"), list) else []
            edges = graph.get("edges") if isinstance(graph.get("edges"), list) else []
            lines.append(f"Model: {len(nodes)} nodes, {len(edges)} edges")
        else:
            lines.append("Model: none yet")
        lines.append(
            "Analysis: available"
            if context.analysis_response is not None
            else "Analysis: not run"
        )
        if context.event_log_summary:
            lines.append(f"Recent activity: {context.event_log_summary}")
        if context.selected_elements:
            lines.append("Selected: " + ", ".join(context.selected_elements))

        history = context.messages[-self._history_turns :] if self._history_turns else ()
        messages = tuple({"role": m.role, "content": m.content} for m in history)
        messages += ({"role": "user", "content": message},)
        return AssembledContext(
            system_prompt="\n".join(lines), messages=messages, mode="simple"
        )


async def assemble_with_fallback(
    assembler: ContextAssembler | None,
    context: ConversationContext,
    message: str,
    *,
    request_id: str,
) -> AssembledContext:
    """Assemble with *assembler*, degrading to the simple strategy on failure."""
    simple = SimpleContextAssembler()
    if assembler is None:
        return await simple.assemble(context, message)
    try:
        return await assembler.assemble(context, message)
    except Exception:
        logger.warning(
            "Context assembly failed [%s]; falling back to simple context",
            request_id,
            exc_info=True,
        )
    assembled = await simple.assemble(context, message)
    return replace(assembled, mode="fallback")
