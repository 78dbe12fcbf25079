"""Block factory: typed output units with content-derived or random ids.

Deterministic variants (``graph_patch``, ``fact``, ``review_card``,
``brief``) hash a canonical form of a declared subset of their data, so the
same semantic content always gets the same ``block_id``. Ephemeral variants
(``commentary``, ``framing``) get a fresh random id on every call.
Provenance is never hashed.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import json
from typing import Any, Literal
import uuid

from deliberate.types import DecisionStage, Provenance

BlockType = Literal[
    "graph_patch", "fact", "commentary", "framing", "review_card", "brief"
]

_ID_HEX_CHARS = 16

# Fields hashed for each deterministic variant. *None* hashes all of ``data``.
# graph_patch leaves out status, summary and the rest of its presentational
# fields so that accepting a patch or rewording it keeps its identity. Fact
# blocks carry their run lineage but are identified by content alone.
GRAPH_PATCH_HASHED_FIELDS: tuple[str, ...] = ("patch_type", "operations")
FACT_HASHED_FIELDS: tuple[str, ...] = ("fact_type", "facts")
REVIEW_CARD_HASHED_FIELDS: tuple[str, ...] | None = None
BRIEF_HASHED_FIELDS: tuple[str, ...] | None = None


@dataclass(frozen=True)
class Block:
    block_id: str
    block_type: BlockType
    data: dict[str, Any]
    provenance: Provenance
    actions: tuple[dict[str, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form used inside envelopes."""
        out: dict[str, Any] = {
            "block_id": self.block_id,
            "block_type": self.block_type,
            "data": copy.deepcopy(self.data),
            "provenance": dict(self.provenance),
        }
        if self.actions:
            out["actions"] = [dict(a) for a in self.actions]
        return out


def canonical_json(value: Any) -> str:
    """Serialise with keys sorted at every depth and list order preserved."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def content_block_id(
    block_type: BlockType, data: dict[str, Any], fields: tuple[str, ...] | None
) -> str:
    """Return ``blk_<type>_<16 hex>`` derived from the hashed subset of *data*."""
    subset = data if fields is None else {k: data.get(k) for k in fields}
    digest = hashlib.sha256(canonical_json(subset).encode("utf-8")).hexdigest()
    return f"blk_{block_type}_{digest[:_ID_HEX_CHARS]}"


def ephemeral_block_id(block_type: BlockType) -> str:
    return f"blk_{block_type}_{uuid.uuid4().hex[:_ID_HEX_CHARS]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _provenance(trigger: str, turn_id: str) -> Provenance:
    return {"trigger": trigger, "turn_id": turn_id, "timestamp": _now_iso()}


# --- Deterministic variants ---


def create_graph_patch_block(
    data: dict[str, Any], turn_id: str, *, trigger: str = "tool:edit_graph"
) -> Block:
    """Build a graph_patch block.

    *data* carries ``patch_type``, ``operations`` and ``status`` plus
    optional ``applied_graph``, ``summary``, ``rejection`` and
    ``validation_warnings``. Proposed patches offer accept/dismiss actions.
    """
    actions: tuple[dict[str, str], ...] = ()
    if data.get("status") == "proposed":
        actions = (
            {"action_id": "accept", "label": "Apply"},
            {"action_id": "dismiss", "label": "Dismiss"},
        )
    return Block(
        block_id=content_block_id("graph_patch", data, GRAPH_PATCH_HASHED_FIELDS),
        block_type="graph_patch",
        data=copy.deepcopy(data),
        provenance=_provenance(trigger, turn_id),
        actions=actions,
    )


def create_fact_block(
    data: dict[str, Any],
    turn_id: str,
    response_hash: str | None = None,
    seed: int | None = None,
) -> Block:
    """Build a fact block, tying it to the analysis run that produced it."""
    payload = copy.deepcopy(data)
    if response_hash is not None:
        payload["response_hash"] = response_hash
    if seed is not None:
        payload["seed"] = seed
    return Block(
        block_id=content_block_id("fact", payload, FACT_HASHED_FIELDS),
        block_type="fact",
        data=payload,
        provenance=_provenance("tool:run_analysis", turn_id),
    )


def create_review_card_block(
    card: dict[str, Any], turn_id: str, *, trigger: str = "tool:run_analysis"
) -> Block:
    data = {"card": copy.deepcopy(card)}
    return Block(
        block_id=content_block_id("review_card", card, REVIEW_CARD_HASHED_FIELDS),
        block_type="review_card",
        data=data,
        provenance=_provenance(trigger, turn_id),
    )


def create_brief_block(brief: dict[str, Any], turn_id: str) -> Block:
    return Block(
        block_id=content_block_id("brief", brief, BRIEF_HASHED_FIELDS),
        block_type="brief",
        data={"brief": copy.deepcopy(brief)},
        provenance=_provenance("tool:generate_brief", turn_id),
    )


# --- Ephemeral variants ---


def create_commentary_block(
    text: str,
    turn_id: str,
    trigger: str,
    supporting_refs: list[dict[str, Any]] | None = None,
) -> Block:
    return Block(
        block_id=ephemeral_block_id("commentary"),
        block_type="commentary",
        data={"narrative": text, "supporting_refs": copy.deepcopy(supporting_refs or [])},
        provenance=_provenance(trigger, turn_id),
    )


def create_framing_block(
    stage: DecisionStage, turn_id: str, goal: str | None = None
) -> Block:
    data: dict[str, Any] = {"stage": stage}
    if goal is not None:
        data["goal"] = goal
    return Block(
        block_id=ephemeral_block_id("framing"),
        block_type="framing",
        data=data,
        provenance=_provenance("system", turn_id),
    )
