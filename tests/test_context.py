"""Context assembly, fallback and fingerprints."""

from __future__ import annotations

import logging

import pytest

from deliberate.context import (
    AssembledContext,
    SimpleContextAssembler,
    assemble_with_fallback,
    hash_context,
)
from deliberate.types import ConversationMessage, Framing
from tests.conftest import FailingAssembler

pytestmark = pytest.mark.unit


class TestSimpleAssembler:
    @pytest.mark.asyncio
    async def test_summarises_state(self, make_context) -> None:
        context = make_context(
            framing=Framing(stage="ideate", goal="Grow revenue", constraints=("No layoffs",)),
            analysis_response={"results": []},
            selected_elements=("opt_a",),
        )
        assembled = await SimpleContextAssembler().assemble(context, "what now?")
        assert assembled.mode == "simple"
        assert "Stage: ideate" in assembled.system_prompt
        assert "Goal: Grow revenue" in assembled.system_prompt
        assert "Constraints: No layoffs" in assembled.system_prompt
        assert "Model: 4 nodes, 2 edges" in assembled.system_prompt
        assert "Analysis: available" in assembled.system_prompt
        assert "Selected: opt_a" in assembled.system_prompt
        assert assembled.messages[-1] == {"role": "user", "content": "what now?"}

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, make_context) -> None:
        history = tuple(
            ConversationMessage(role="user", content=f"m{i}") for i in range(30)
        )
        assembled = await SimpleContextAssembler(history_turns=3).assemble(
            make_context(messages=history, graph=None), "latest"
        )
        assert [m["content"] for m in assembled.messages] == ["m27", "m28", "m29", "latest"]
        assert "Model: none yet" in assembled.system_prompt


class TestFallback:
    @pytest.mark.asyncio
    async def test_failure_degrades_and_changes_hash(self, make_context, caplog) -> None:
        caplog.set_level(logging.WARNING, logger="deliberate")
        context = make_context()
        degraded = await assemble_with_fallback(
            FailingAssembler(), context, "hi", request_id="req-7"
        )
        simple = await assemble_with_fallback(None, context, "hi", request_id="req-7")

        assert degraded.mode == "fallback"
        assert simple.mode == "simple"
        assert degraded.system_prompt == simple.system_prompt
        assert degraded.context_hash() != simple.context_hash()
        assert "req-7" in caplog.text

    @pytest.mark.asyncio
    async def test_working_assembler_is_used(self, make_context) -> None:
        class Fabric:
            async def assemble(self, context, message):
                return AssembledContext(
                    system_prompt="rich", messages=({"role": "user", "content": message},)
                )

        assembled = await assemble_with_fallback(
            Fabric(), make_context(), "hi", request_id="r"
        )
        assert assembled.mode == "fabric"
        assert assembled.system_prompt == "rich"


class TestFingerprints:
    def test_context_hash_format_and_stability(self) -> None:
        a = AssembledContext(system_prompt="s", messages=({"role": "user", "content": "x"},))
        b = AssembledContext(system_prompt="s", messages=({"content": "x", "role": "user"},))
        assert a.context_hash() == b.context_hash()
        assert len(a.context_hash()) == 32
        assert a.size_chars() == 2

    def test_hash_context_tracks_content(self, make_context) -> None:
        assert hash_context(make_context()) == hash_context(make_context())
        assert hash_context(make_context()) != hash_context(make_context(graph=None))
