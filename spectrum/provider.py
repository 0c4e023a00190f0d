"""Provider loop: telemetry in, grant/revoke transactions out."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .decision import ActionKind, Decision, DecisionEngine
from .market_client import MarketGateway
from .poller import Poller
from .schema import SchemaError, decode_sample
from .submission import SubmissionQueue, SubmissionResult
from .telemetry_log import TelemetryLogClient

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProviderContext:
    """Collaborators wired once at startup and shared by reference."""

    gateway: MarketGateway
    telemetry: TelemetryLogClient
    schema_id: str
    publisher: str
    engine: DecisionEngine
    queue: SubmissionQueue = field(default_factory=SubmissionQueue)
    payment_wei: int = 10**15
    poll_interval_seconds: float = 0.5
    poll_max_backoff_seconds: float = 8.0
    clock_ms: Callable[[], int] = _now_ms


class SpectrumProvider:
    def __init__(self, context: ProviderContext) -> None:
        self.context = context
        self.engine = context.engine
        self.queue = context.queue
        self.poller = Poller(
            context.telemetry,
            context.schema_id,
            context.publisher,
            self.handle_record,
            interval_seconds=context.poll_interval_seconds,
            max_backoff_seconds=context.poll_max_backoff_seconds,
        )

    async def handle_record(self, index: int, data: bytes) -> Optional[Decision]:
        try:
            sample = decode_sample(data)
        except SchemaError as exc:
            logger.error("Skipping undecodable telemetry record %s: %s", index, exc)
            return None

        decision = self.engine.decide(sample, self.context.clock_ms())
        device = decision.device_key[:18]
        if decision.kind is ActionKind.GRANT:
            logger.info(
                "[%s] GRANT snr=%sdB bid=%s wei freq=%sMHz duration=%ss",
                device,
                sample.snr_db,
                sample.bid_price,
                decision.frequency_mhz,
                decision.duration_seconds,
            )
            self._enqueue(decision)
        elif decision.kind is ActionKind.REVOKE:
            logger.info("[%s] REVOKE snr=%sdB", device, sample.snr_db)
            self._enqueue(decision)
        else:
            logger.debug("[%s] No action snr=%sdB", device, sample.snr_db)
        return decision

    def _enqueue(self, decision: Decision) -> None:
        gateway = self.context.gateway
        label = f"{decision.kind.value} {decision.device_key[:18]}"

        if decision.kind is ActionKind.GRANT:
            payment = self.context.payment_wei

            async def task() -> Optional[str]:
                return await asyncio.to_thread(
                    gateway.grant_access,
                    decision.device_id,
                    decision.frequency_mhz,
                    decision.duration_seconds,
                    payment,
                )
        else:

            async def task() -> Optional[str]:
                return await asyncio.to_thread(gateway.revoke_access, decision.device_id)

        def on_result(result: SubmissionResult) -> None:
            self._on_result(decision, result)

        self.queue.submit(label, task, on_result)

    def _on_result(self, decision: Decision, result: SubmissionResult) -> None:
        device = decision.device_key[:18]
        if result.ok:
            logger.info("[%s] %s confirmed (tx=%s)", device, decision.kind.value, result.tx_hash)
            self.engine.confirm(decision)
            return
        logger.error(
            "[%s] %s rejected (%s): %s", device, decision.kind.value, result.category, result.reason
        )
        self.engine.rollback(decision, reason=result.category)

    async def run(self, stop: asyncio.Event) -> None:
        logger.info(
            "Provider %s watching schema %s publisher %s (min SNR %sdB)",
            self.context.gateway.sender,
            self.context.schema_id,
            self.context.publisher,
            self.engine.min_snr,
        )
        try:
            await self.poller.run(stop)
        finally:
            await self.queue.close()
