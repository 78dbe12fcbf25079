"""Collaborator interfaces: model adapters and graph authoring.

Vendor SDKs, prompt text and graph repair live behind these protocols.
Adapters return already-parsed replies; the orchestrator never sees raw
model output.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from deliberate.errors import ModelError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from deliberate.types import ConversationContext, SuggestedAction


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCall:
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelReply:
    """Parsed adapter output.

    ``blocks`` holds model-authored blocks as plain dicts with a ``type`` of
    ``commentary`` (``text``, optional ``supporting_refs``) or
    ``review_card`` (``card``).
    """

    text: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    blocks: tuple[dict[str, Any], ...] = ()
    suggested_actions: tuple[SuggestedAction, ...] = ()
    diagnostics: str | None = None
    parse_warnings: tuple[str, ...] = ()


class ModelAdapter(Protocol):
    """Protocol every model adapter implements."""

    async def chat(
        self, system: str, user_message: str, *, request_id: str, timeout_s: float
    ) -> ModelReply:
        """Single-shot chat without tools."""
        ...


class ToolCallingAdapter(ModelAdapter, Protocol):
    """Adapters that can also offer tools to the model."""

    async def chat_with_tools(
        self,
        system: str,
        messages: list[dict[str, str]],
        tools: list[ToolDefinition],
        *,
        request_id: str,
        timeout_s: float,
    ) -> ModelReply:
        """Chat with tool definitions; the reply may contain tool calls."""
        ...


def supports_tools(adapter: object) -> bool:
    return callable(getattr(adapter, "chat_with_tools", None))


async def call_model(call: Awaitable[ModelReply], *, timeout_s: float) -> ModelReply:
    """Await an adapter call under a timeout, normalising failures to ``ModelError``."""
    try:
        return await asyncio.wait_for(call, timeout=timeout_s)
    except asyncio.TimeoutError:
        raise ModelError(
            f"Model call timed out after {timeout_s:g}s", timed_out=True
        ) from None
    except ModelError:
        raise
    except Exception as e:
        raise ModelError(
            f"Model call failed ({type(e).__name__})",
            hint="Check the adapter's logs for the underlying provider error.",
        ) from e


# --- Graph authoring collaborators ---


@dataclass(frozen=True)
class GraphDraft:
    graph: dict[str, Any]
    #: When empty, the draft's nodes and edges are expressed as add operations.
    operations: tuple[dict[str, Any], ...] = ()
    summary: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class GraphEdit:
    operations: tuple[dict[str, Any], ...] = ()
    summary: str | None = None


class GraphDrafter(Protocol):
    async def draft(self, brief: str, *, request_id: str) -> GraphDraft:
        """Draft a full decision graph from a brief."""
        ...


class GraphEditor(Protocol):
    async def edit(
        self, context: ConversationContext, description: str, *, request_id: str
    ) -> GraphEdit:
        """Turn an edit description into patch operations against context.graph."""
        ...
