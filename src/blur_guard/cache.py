"""Per-image gating: at most one evaluation in flight per cache key."""

from __future__ import annotations
import asyncio
import hashlib
import logging
from collections import OrderedDict
from functools import partial
from threading import Lock
from typing import Awaitable, Callable, Dict, Hashable

import numpy as np

from .types import ModerationDecision

logger = logging.getLogger(__name__)


def content_key(image: np.ndarray) -> str:
    """Stable SHA-256 identity of a decoded pixel buffer."""
    h = hashlib.sha256()
    h.update(str(image.shape).encode())
    h.update(str(image.dtype).encode())
    h.update(np.ascontiguousarray(image).tobytes())
    return h.hexdigest()


class _Flight:
    """An in-flight computation and the number of callers awaiting it."""

    __slots__ = ("task", "waiters")

    def __init__(self, task: asyncio.Task):
        self.task = task
        self.waiters = 0


class DecisionCache:
    """A bounded LRU of decisions with single-flight computation.

    Completed decisions are returned without suspending. Callers that arrive
    while a computation for the same key is running await that computation
    instead of starting another one. Failures are delivered to every waiter
    and are not cached.
    """

    def __init__(self, capacity: int = 256):
        """Initializes the DecisionCache.

        Args:
            capacity: Maximum number of completed decisions retained.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.lock = Lock()
        self._done: "OrderedDict[Hashable, ModerationDecision]" = OrderedDict()
        self._inflight: Dict[Hashable, _Flight] = {}
        self.hits = 0
        self.misses = 0
        self.joins = 0
        self.failures = 0

    def __len__(self) -> int:
        return len(self._done)

    def __contains__(self, key: Hashable) -> bool:
        with self.lock:
            return key in self._done

    async def get_or_compute(
        self,
        key: Hashable,
        compute_fn: Callable[[], Awaitable[ModerationDecision]],
    ) -> ModerationDecision:
        """Returns the decision for `key`, computing it at most once at a time.

        Args:
            key: The (image identity, settings) cache key.
            compute_fn: Zero-argument coroutine function producing the decision.

        Returns:
            The cached or freshly computed decision; every concurrent caller
            for the same key receives the same instance.

        Raises:
            Whatever `compute_fn` raised, for every caller waiting on it.
        """
        with self.lock:
            cached = self._done.get(key)
            if cached is not None:
                self._done.move_to_end(key)
                self.hits += 1
                return cached
            flight = self._inflight.get(key)
            if flight is None:
                self.misses += 1
                task = asyncio.get_running_loop().create_task(compute_fn())
                flight = _Flight(task)
                self._inflight[key] = flight
                task.add_done_callback(partial(self._settle, key, flight))
            else:
                self.joins += 1
            flight.waiters += 1

        cancelled = False
        try:
            # shield: one caller leaving must not cancel the shared task.
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            with self.lock:
                flight.waiters -= 1
                abandoned = (
                    cancelled and flight.waiters == 0 and not flight.task.done()
                )
                if abandoned and self._inflight.get(key) is flight:
                    # Later callers start a fresh computation.
                    del self._inflight[key]
            if abandoned:
                logger.debug(f"Cancelling abandoned evaluation for {key!r}")
                flight.task.cancel()

    def _settle(self, key: Hashable, flight: _Flight, task: asyncio.Task) -> None:
        with self.lock:
            if self._inflight.get(key) is flight:
                del self._inflight[key]
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                self.failures += 1
                logger.warning(f"Evaluation for {key!r} failed, not cached: {exc!r}")
                return
            self._done[key] = task.result()
            self._done.move_to_end(key)
            while len(self._done) > self.capacity:
                evicted, _ = self._done.popitem(last=False)
                logger.debug(f"Evicted {evicted!r}")

    def clear(self) -> None:
        """Drops every completed decision; in-flight work is unaffected."""
        with self.lock:
            self._done.clear()

    def stats(self) -> Dict[str, int]:
        """Returns cache counters as a dictionary."""
        with self.lock:
            return {
                "size": len(self._done),
                "capacity": self.capacity,
                "in_flight": len(self._inflight),
                "hits": self.hits,
                "misses": self.misses,
                "joins": self.joins,
                "failures": self.failures,
            }
