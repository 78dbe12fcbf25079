"""Inbound request parsing through the schema wall."""

from __future__ import annotations

from typing import Any

import pytest

from deliberate.errors import RequestValidationError
from deliberate.request import MAX_MESSAGE_CHARS, parse_turn_request
from deliberate.types import AnalysisOption, SystemEvent

pytestmark = pytest.mark.unit


def _raw(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "message": "run analysis",
        "context": {"graph": {"nodes": [], "edges": []}},
        "scenario_id": "scn-1",
        "client_turn_id": "ct-1",
    }
    body.update(overrides)
    return body


class TestValidRequests:
    def test_minimal(self) -> None:
        request = parse_turn_request(_raw())
        assert request.message == "run analysis"
        assert request.client_turn_id == "ct-1"
        assert request.context.scenario_id == "scn-1"
        assert request.context.graph == {"nodes": [], "edges": []}
        assert request.system_event is None

    def test_full_context(self) -> None:
        request = parse_turn_request(
            _raw(
                context={
                    "scenario_id": "scn-ctx",
                    "graph": None,
                    "analysis_response": {"results": []},
                    "framing": {
                        "stage": "evaluate",
                        "goal": "  ",
                        "constraints": ["budget < 10k"],
                        "options": ["raise", "hold"],
                    },
                    "messages": [
                        {"role": "user", "content": "hi"},
                        {"role": "assistant", "content": "hello"},
                    ],
                    "selected_elements": ["fac_demand"],
                    "event_log_summary": "Patch accepted",
                    "analysis_inputs": {
                        "options": [{"option_id": "opt_a", "label": "A"}],
                        "seed": 9,
                        "n_samples": 200,
                    },
                    "future_field": {"ignored": True},
                }
            )
        )
        ctx = request.context
        assert ctx.scenario_id == "scn-ctx"
        assert ctx.framing is not None
        assert ctx.framing.stage == "evaluate"
        assert ctx.framing.goal is None
        assert ctx.framing.constraints == ("budget < 10k",)
        assert [m.role for m in ctx.messages] == ["user", "assistant"]
        assert ctx.selected_elements == ("fac_demand",)
        assert ctx.analysis_inputs is not None
        assert ctx.analysis_inputs.options == (
            AnalysisOption(option_id="opt_a", label="A", interventions={}),
        )
        assert ctx.analysis_inputs.seed == 9

    def test_ids_and_message_are_stripped(self) -> None:
        request = parse_turn_request(
            _raw(message="  hi  ", client_turn_id=" ct-9 ", scenario_id=" s ")
        )
        assert request.message == "hi"
        assert request.client_turn_id == "ct-9"
        assert request.scenario_id == "s"

    def test_system_event_without_message(self) -> None:
        request = parse_turn_request(
            _raw(
                message="",
                system_event={"type": "patch_accepted", "payload": {"operations": []}},
            )
        )
        assert request.system_event == SystemEvent(
            type="patch_accepted", payload={"operations": []}
        )

    def test_null_message_with_system_event(self) -> None:
        request = parse_turn_request(
            _raw(message=None, system_event={"type": "feedback_submitted"})
        )
        assert request.message == ""
        assert request.system_event == SystemEvent(type="feedback_submitted")


class TestInvalidRequests:
    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"scenario_id": ""}, "scenario_id"),
            ({"scenario_id": "   "}, "scenario_id"),
            ({"client_turn_id": ""}, "client_turn_id"),
            ({"client_turn_id": "x" * 129}, "client_turn_id"),
            ({"message": "x" * (MAX_MESSAGE_CHARS + 1)}, "message"),
            ({"context": None}, "context"),
            ({"system_event": {"type": "teleport"}}, "system_event.type"),
        ],
    )
    def test_field_is_named(self, overrides: dict[str, Any], field: str) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            parse_turn_request(_raw(**overrides))
        assert exc_info.value.field == field
        assert field in str(exc_info.value)
        assert exc_info.value.hint

    def test_missing_context(self) -> None:
        raw = _raw()
        del raw["context"]
        with pytest.raises(RequestValidationError) as exc_info:
            parse_turn_request(raw)
        assert exc_info.value.field == "context"

    def test_empty_message_without_event(self) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            parse_turn_request(_raw(message="   "))
        assert "message must not be empty" in str(exc_info.value)
        assert "Value error" not in str(exc_info.value)

    def test_null_message_without_event(self) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            parse_turn_request(_raw(message=None))
        assert "message must not be empty" in str(exc_info.value)

    def test_bad_message_role(self) -> None:
        with pytest.raises(RequestValidationError) as exc_info:
            parse_turn_request(
                _raw(context={"messages": [{"role": "system", "content": "x"}]})
            )
        assert exc_info.value.field == "context.messages.0.role"
