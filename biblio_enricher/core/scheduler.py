from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Awaitable, List, Optional, Set

from biblio_enricher.core.errors import CancelledError

logger = logging.getLogger(__name__)

JITTER_LOW = 0.8
JITTER_HIGH = 1.2


class CancelToken:
    """Cooperative stop signal: explicit cancel(), a stop file, or a runtime budget."""

    def __init__(self, stop_file: Optional[str] = None, max_seconds: float = 0) -> None:
        self.stop_file = stop_file
        self.max_seconds = max_seconds
        self.start_ts = time.monotonic()
        self._cancelled = False
        self._reason = ""

    def cancel(self, reason: str = "requested") -> None:
        if not self._cancelled:
            logger.info("cancel | reason=%s", reason)
        self._cancelled = True
        self._reason = self._reason or reason

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self.max_seconds and self.max_seconds > 0 and (time.monotonic() - self.start_ts) >= self.max_seconds:
            self.cancel(f"max_seconds={self.max_seconds}")
            return True
        if self.stop_file and os.path.exists(self.stop_file):
            self.cancel(f"stop_file={self.stop_file}")
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError(f"enrichment cancelled ({self._reason})")


def jittered_delay(base: float, low: float = JITTER_LOW, high: float = JITTER_HIGH) -> float:
    if base <= 0:
        return 0.0
    return random.uniform(base * low, base * high)


async def pause(base: float, cancel: Optional[CancelToken] = None) -> float:
    """Sleep a jittered delay; a cancelled token skips the wait."""
    if cancel is not None and cancel.cancelled:
        return 0.0
    delay = jittered_delay(base)
    if delay > 0:
        await asyncio.sleep(delay)
    return delay


class TaskPool:
    """
    Soft-limited in-flight tracker.

    add() never blocks. wait(limit) only suspends while `limit` or more tasks are
    outstanding, so a caller that adds before waiting can briefly run limit + 1.
    """

    def __init__(self) -> None:
        self._pending: Set["asyncio.Task[Any]"] = set()
        self._admitted: List["asyncio.Task[Any]"] = []

    def add(self, aw: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(aw)
        self._pending.add(task)
        self._admitted.append(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait(self, limit: int) -> Optional["asyncio.Task[Any]"]:
        if len(self._pending) < max(1, limit):
            return None
        done, _ = await asyncio.wait(set(self._pending), return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            self._pending.discard(t)
        return next(iter(done))

    async def all(self) -> List[Any]:
        """Results of every admitted task in admission order; failures come back as exception objects."""
        if not self._admitted:
            return []
        return list(await asyncio.gather(*self._admitted, return_exceptions=True))
