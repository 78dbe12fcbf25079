"""Inbound turn requests: validate raw JSON into frozen dataclasses.

The route layer hands us whatever the client sent. Everything flows through
a Pydantic schema wall first, so the handler only ever sees well-formed
``TurnRequest`` objects.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from deliberate.errors import RequestValidationError
from deliberate.types import (
    AnalysisInputs,
    AnalysisOption,
    ConversationContext,
    ConversationMessage,
    DecisionStage,
    Framing,
    SystemEvent,
    SystemEventType,
    TurnRequest,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

MAX_MESSAGE_CHARS = 8000
MAX_CLIENT_TURN_ID_CHARS = 128

# --- Schema (Pydantic wall) ---


class _OptionModel(BaseModel):
    option_id: str = Field(min_length=1)
    label: str | None = None
    interventions: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class _AnalysisInputsModel(BaseModel):
    options: list[_OptionModel] = Field(default_factory=list)
    seed: int | None = None
    n_samples: int | None = Field(default=None, ge=1)

    model_config = {"extra": "ignore"}


class _FramingModel(BaseModel):
    stage: DecisionStage = "frame"
    goal: str | None = None
    constraints: list[str] = Field(default_factory=list)
    brief_text: str | None = None
    options: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @field_validator("goal", "brief_text", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat whitespace-only text as absent."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


class _MessageModel(BaseModel):
    role: Literal["user", "assistant"]
    content: str

    model_config = {"extra": "ignore"}


class _ContextModel(BaseModel):
    graph: dict[str, Any] | None = None
    analysis_response: dict[str, Any] | None = None
    framing: _FramingModel | None = None
    messages: list[_MessageModel] = Field(default_factory=list)
    scenario_id: str | None = None
    event_log_summary: str | None = None
    selected_elements: list[str] = Field(default_factory=list)
    analysis_inputs: _AnalysisInputsModel | None = None

    # Unknown context keys belong to newer clients; drop them quietly.
    model_config = {"extra": "ignore"}


class _SystemEventModel(BaseModel):
    type: SystemEventType
    payload: dict[str, Any] = Field(default_factory=dict)


class _TurnRequestModel(BaseModel):
    message: str = Field(default="", max_length=MAX_MESSAGE_CHARS)
    context: _ContextModel
    scenario_id: str = Field(min_length=1)
    client_turn_id: str = Field(min_length=1, max_length=MAX_CLIENT_TURN_ID_CHARS)
    system_event: _SystemEventModel | None = None

    @field_validator("message", mode="before")
    @classmethod
    def null_message_is_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("scenario_id", "client_turn_id", mode="before")
    @classmethod
    def strip_ids(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @model_validator(mode="after")
    def message_or_event(self) -> _TurnRequestModel:
        """A turn needs something to act on."""
        if not self.message.strip() and self.system_event is None:
            raise ValueError("message must not be empty without a system_event")
        return self


# --- Conversion ---


def _to_context(model: _ContextModel, scenario_id: str) -> ConversationContext:
    framing = None
    if model.framing is not None:
        f = model.framing
        framing = Framing(
            stage=f.stage,
            goal=f.goal,
            constraints=tuple(f.constraints),
            brief_text=f.brief_text,
            options=tuple(f.options),
        )
    inputs = None
    if model.analysis_inputs is not None:
        a = model.analysis_inputs
        inputs = AnalysisInputs(
            options=tuple(
                AnalysisOption(
                    option_id=o.option_id, label=o.label, interventions=o.interventions
                )
                for o in a.options
            ),
            seed=a.seed,
            n_samples=a.n_samples,
        )
    return ConversationContext(
        scenario_id=model.scenario_id or scenario_id,
        messages=tuple(
            ConversationMessage(role=m.role, content=m.content) for m in model.messages
        ),
        graph=model.graph,
        analysis_response=model.analysis_response,
        framing=framing,
        event_log_summary=model.event_log_summary,
        selected_elements=tuple(model.selected_elements),
        analysis_inputs=inputs,
    )


def parse_turn_request(raw: Mapping[str, Any]) -> TurnRequest:
    """Validate a raw request body and return a ``TurnRequest``.

    Raises:
        RequestValidationError: naming the first offending field.
    """
    try:
        model = _TurnRequestModel.model_validate(raw)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(part) for part in err.get("loc", ())) or None
        msg = err.get("msg") or "invalid value"
        if msg.startswith("Value error, "):
            msg = msg[13:]
        raise RequestValidationError(
            f"Invalid turn request: {field + ': ' if field else ''}{msg}",
            field=field,
            hint="Send message, context, scenario_id and client_turn_id.",
        ) from e

    event = None
    if model.system_event is not None:
        event = SystemEvent(
            type=model.system_event.type, payload=model.system_event.payload
        )
    return TurnRequest(
        message=model.message.strip(),
        context=_to_context(model.context, model.scenario_id),
        scenario_id=model.scenario_id,
        client_turn_id=model.client_turn_id,
        system_event=event,
    )
