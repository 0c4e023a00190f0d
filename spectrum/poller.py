"""Cursor-based consumer of the telemetry log.

Each record of a (schema, publisher) stream is dispatched exactly once, in log
order. The cursor advances only after a record has been dispatched; a failed
fetch ends the tick and the same index is retried on the next one.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .telemetry_log import TelemetryLogClient

logger = logging.getLogger(__name__)

Dispatch = Callable[[int, bytes], Awaitable[None]]


@dataclass(frozen=True)
class PollResult:
    total: int
    dispatched: int
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Poller:
    def __init__(
        self,
        log: TelemetryLogClient,
        schema_id: str,
        publisher: str,
        dispatch: Dispatch,
        *,
        interval_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
    ) -> None:
        self.log = log
        self.schema_id = schema_id
        self.publisher = publisher
        self.dispatch = dispatch
        self.interval_seconds = interval_seconds
        self.max_backoff_seconds = max(max_backoff_seconds, interval_seconds)
        self.last_processed_index = -1
        self.consecutive_failures = 0
        self._tick_lock = asyncio.Lock()

    def next_delay(self) -> float:
        """Delay before the next tick: doubles per consecutive failure, capped."""
        if self.consecutive_failures == 0:
            return self.interval_seconds
        return min(self.interval_seconds * (2 ** self.consecutive_failures), self.max_backoff_seconds)

    async def tick(self) -> PollResult:
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> PollResult:
        try:
            total = int(await asyncio.to_thread(self.log.total, self.schema_id, self.publisher))
        except Exception as exc:
            self.consecutive_failures += 1
            logger.warning("Failed to read telemetry count (attempt %s): %s", self.consecutive_failures, exc)
            return PollResult(total=0, dispatched=0, error=exc)

        dispatched = 0
        index = self.last_processed_index + 1
        while index < total:
            try:
                data = await asyncio.to_thread(self.log.get_at_index, self.schema_id, self.publisher, index)
                await self.dispatch(index, data)
            except Exception as exc:
                self.consecutive_failures += 1
                logger.warning(
                    "Telemetry record %s not processed; retrying next tick (attempt %s): %s",
                    index,
                    self.consecutive_failures,
                    exc,
                )
                return PollResult(total=total, dispatched=dispatched, error=exc)
            self.last_processed_index = index
            dispatched += 1
            index += 1

        self.consecutive_failures = 0
        if dispatched:
            logger.debug("Dispatched %s records (cursor=%s total=%s)", dispatched, self.last_processed_index, total)
        return PollResult(total=total, dispatched=dispatched)

    async def run(self, stop: asyncio.Event) -> None:
        """Tick until `stop` is set."""
        logger.info(
            "Polling schema %s publisher %s every %ss", self.schema_id, self.publisher, self.interval_seconds
        )
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                continue
        logger.info("Poller stopped at cursor %s", self.last_processed_index)
