"""Idempotency cache: replay finished turns and coalesce duplicate submissions.

The turn handler keys entries by ``(scenario_id, client_turn_id)``. Entries
expire after a TTL and are evicted oldest-first once the cache is full.
Envelopes are deep-copied on the way in and out, so a stored entry never
changes after insertion.

The cache is an explicit object handed to the turn handler. It is only ever
touched from the event loop thread, and there is no ``await`` between
checking for an in-flight turn and registering one, so no lock is needed.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import copy
from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable

    from deliberate.config import Config
    from deliberate.types import Envelope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyEntry:
    envelope: Envelope
    created_at: float


def _consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' when nobody else waited."""
    if not fut.cancelled():
        fut.exception()


class IdempotencyCache:
    """Bounded, TTL'd store of completed turn envelopes."""

    def __init__(
        self,
        *,
        max_entries: int = 1000,
        ttl_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("IdempotencyCache.max_entries must be >= 1")
        if ttl_s < 0:
            raise ValueError("IdempotencyCache.ttl_s must be >= 0")
        self._max_entries = max_entries
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[Hashable, IdempotencyEntry] = OrderedDict()
        self._inflight: dict[Hashable, asyncio.Future[Envelope]] = {}

    @classmethod
    def from_config(cls, config: Config) -> IdempotencyCache:
        return cls(
            max_entries=config.idempotency_max_entries,  # type: ignore[arg-type]
            ttl_s=config.idempotency_ttl_s,  # type: ignore[arg-type]
        )

    def __len__(self) -> int:
        self._drop_expired()
        return len(self._entries)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def _is_expired(self, entry: IdempotencyEntry) -> bool:
        return self._clock() - entry.created_at >= self._ttl_s

    def _drop_expired(self) -> None:
        # Insertion order is creation order, so expired entries sit at the front.
        while self._entries:
            key, entry = next(iter(self._entries.items()))
            if not self._is_expired(entry):
                break
            del self._entries[key]

    def get(self, key: Hashable) -> Envelope | None:
        """Return a copy of the cached envelope, or *None* when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._entries[key]
            return None
        return copy.deepcopy(entry.envelope)

    def put(self, key: Hashable, envelope: Envelope) -> bool:
        """Store *envelope* unless a live entry exists. Returns True when stored."""
        existing = self._entries.get(key)
        if existing is not None and not self._is_expired(existing):
            logger.debug("Idempotency key %s already stored; keeping first result", key)
            return False
        self._entries.pop(key, None)
        self._drop_expired()
        while len(self._entries) >= self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted idempotency entry %s", evicted)
        self._entries[key] = IdempotencyEntry(
            envelope=copy.deepcopy(envelope), created_at=self._clock()
        )
        return True

    def clear(self) -> None:
        self._entries.clear()

    async def run_once(
        self, key: Hashable, work: Callable[[], Awaitable[Envelope]]
    ) -> Envelope:
        """Return the cached envelope for *key*, or compute and store it once.

        A duplicate arriving while the first submission is still running
        awaits that submission instead of dispatching again.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            logger.info("Turn %s already in flight; awaiting the first submission", key)
            try:
                result = await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The first submission was cancelled; this one takes over.
                return await self.run_once(key, work)
            return copy.deepcopy(result)

        fut: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_future_exception)
        self._inflight[key] = fut
        try:
            envelope = await work()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as exc:
            fut.set_exception(exc)
            raise
        else:
            self.put(key, envelope)
            fut.set_result(envelope)
            return copy.deepcopy(envelope)
        finally:
            self._inflight.pop(key, None)
