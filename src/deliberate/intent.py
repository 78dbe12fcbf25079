"""Intent gate: route known commands to a tool without a model round-trip.

Matching is exact on the normalised message. Anything else, including
partial or parameterised phrasing such as "run analysis on option b", goes
to the model so an expensive tool is never picked on a guess. ``edit_graph``
and ``undo_patch`` are never routed here; edits need the model to work out
what to change.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from deliberate.types import Routing, ToolName

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCT = ".!?,;:… "
_POLITE_PREFIXES: tuple[str, ...] = ("please ", "can you ", "could you ", "kindly ")
_POLITE_SUFFIXES: tuple[str, ...] = (" please", " for me", " now")

#: Ordered phrase groups. The first group containing the message wins.
PHRASE_GROUPS: tuple[tuple[ToolName, frozenset[str]], ...] = (
    (
        "run_analysis",
        frozenset(
            {
                "run analysis",
                "run the analysis",
                "run an analysis",
                "run it",
                "run the model",
                "analyse",
                "analyze",
                "analyse options",
                "analyze options",
                "analyse the options",
                "analyze the options",
                "evaluate options",
                "evaluate the options",
                "rerun",
                "re-run",
                "rerun analysis",
                "re-run analysis",
                "rerun the analysis",
                "re-run the analysis",
                "run again",
            }
        ),
    ),
    (
        "generate_brief",
        frozenset(
            {
                "generate brief",
                "generate a brief",
                "generate the brief",
                "generate decision brief",
                "generate a decision brief",
                "write a brief",
                "write the brief",
                "create a brief",
                "create brief",
                "brief me",
                "decision brief",
            }
        ),
    ),
    (
        "draft_graph",
        frozenset(
            {
                "draft graph",
                "draft a graph",
                "draft the graph",
                "draft a model",
                "draft the model",
                "build a model",
                "build the model",
                "build the graph",
                "create a model",
                "create the model",
            }
        ),
    ),
    (
        "explain_results",
        frozenset(
            {
                "explain results",
                "explain the results",
                "explain the analysis",
                "explain these results",
                "what do the results mean",
                "what do these results mean",
                "interpret the results",
            }
        ),
    ),
)


@dataclass(frozen=True)
class IntentDecision:
    """Outcome of the gate. ``tool`` is *None* exactly when routing is ``llm``."""

    tool: ToolName | None
    routing: Routing
    normalised_message: str
    matched_pattern: str | None = None


def normalise_message(message: object) -> str:
    """Normalise a message for exact matching. Non-strings become ``""``."""
    if not isinstance(message, str):
        return ""
    text = _WHITESPACE.sub(" ", message.strip().casefold())
    text = text.rstrip(_TRAILING_PUNCT)

    changed = True
    while changed and text:
        changed = False
        for prefix in _POLITE_PREFIXES:
            if text.startswith(prefix):
                text = text[len(prefix) :].lstrip()
                changed = True
        for suffix in _POLITE_SUFFIXES:
            if text.endswith(suffix):
                text = text[: -len(suffix)].rstrip(_TRAILING_PUNCT)
                changed = True
        text = text.rstrip(_TRAILING_PUNCT)
    return text


def resolve_intent(message: object) -> IntentDecision:
    """Return the tool a message deterministically selects, if any.

    Pure and total: every input, including empty or non-string values,
    yields a decision.
    """
    normalised = normalise_message(message)
    if normalised:
        for tool, phrases in PHRASE_GROUPS:
            if normalised in phrases:
                return IntentDecision(
                    tool=tool,
                    routing="deterministic",
                    normalised_message=normalised,
                    matched_pattern=normalised,
                )
    return IntentDecision(tool=None, routing="llm", normalised_message=normalised)
