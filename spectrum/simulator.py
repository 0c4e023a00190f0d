"""Simulated IoT devices publishing signal-quality telemetry.

Each device reports an SNR around a 15 dB baseline with +/-2 dB noise, an
occasional 3 dB interference spike, and an 8 dB drop while a "microwave"
interference window is active. Devices with poor signal bid more.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .schema import (
    SIGNAL_QUALITY_SCHEMA,
    TelemetrySample,
    compute_schema_id,
    device_id_from_label,
    encode_sample,
)
from .telemetry_log import TelemetryLogClient, TelemetryLogError

logger = logging.getLogger(__name__)

BASE_BID_WEI = 10**15
BASELINE_SNR_DB = 15
DEVICE_FREQUENCY_MHZ = 2400

# Shimla, India
DEFAULT_LATITUDE = 31_083_000
DEFAULT_LONGITUDE = 77_173_000

MICROWAVE_DELAY_SECONDS = 10.0
MICROWAVE_DURATION_MS = 3000


def bid_for_snr(snr: int) -> int:
    if snr < 5:
        return BASE_BID_WEI * 10
    if snr < 10:
        return BASE_BID_WEI * 5
    if snr < 12:
        return BASE_BID_WEI * 2
    return BASE_BID_WEI


def interference_level_for_snr(snr: int) -> int:
    if snr >= 15:
        return 0
    if snr >= 12:
        return 1
    if snr >= 10:
        return 2
    if snr >= 7:
        return 3
    if snr >= 5:
        return 4
    return 5


@dataclass
class IoTDevice:
    number: int
    rng: random.Random
    baseline_snr: int = BASELINE_SNR_DB
    latitude: int = DEFAULT_LATITUDE
    longitude: int = DEFAULT_LONGITUDE
    microwave_until_ms: int = 0

    @property
    def device_id(self) -> bytes:
        return device_id_from_label(f"device-{self.number}")

    def microwave_active(self, now_ms: int) -> bool:
        return now_ms < self.microwave_until_ms

    def trigger_microwave(self, now_ms: int, duration_ms: int = MICROWAVE_DURATION_MS) -> None:
        logger.info("Device %s: microwave interference for %sms", self.number, duration_ms)
        self.microwave_until_ms = now_ms + duration_ms

    def measure_snr(self, now_ms: int) -> int:
        snr = self.baseline_snr + (self.rng.random() * 4 - 2)
        if self.microwave_active(now_ms):
            snr -= 8
        if self.rng.random() > 0.95:
            snr -= 3
        return max(0, math.floor(snr))

    def sample(self, now_ms: int) -> TelemetrySample:
        snr = self.measure_snr(now_ms)
        return TelemetrySample(
            timestamp=now_ms,
            device_id=self.device_id,
            frequency_mhz=DEVICE_FREQUENCY_MHZ,
            snr_db=snr,
            latitude=self.latitude,
            longitude=self.longitude,
            interference_level=interference_level_for_snr(snr),
            bid_price=bid_for_snr(snr),
        )


class SignalSimulator:
    def __init__(
        self,
        telemetry: TelemetryLogClient,
        publisher: str,
        *,
        num_devices: int = 3,
        schema_id: Optional[str] = None,
        interval_seconds: float = 1.0,
        rng: Optional[random.Random] = None,
        clock_ms: Optional[Callable[[], int]] = None,
    ) -> None:
        self.telemetry = telemetry
        self.publisher = publisher
        self.schema_id = schema_id or compute_schema_id(SIGNAL_QUALITY_SCHEMA)
        self.interval_seconds = interval_seconds
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        rng = rng or random.Random()
        self.devices: List[IoTDevice] = [IoTDevice(number=i, rng=rng) for i in range(1, num_devices + 1)]

    def publish_once(self) -> List[TelemetrySample]:
        """Publish one sample per device; failures are logged per device."""
        published: List[TelemetrySample] = []
        for device in self.devices:
            now_ms = self._clock_ms()
            sample = device.sample(now_ms)
            try:
                self.telemetry.append(
                    self.schema_id,
                    self.publisher,
                    encode_sample(sample),
                    data_id=f"device-{device.number}-{now_ms}",
                )
            except TelemetryLogError as exc:
                logger.error("Device %s publish failed: %s", device.number, exc)
                continue
            published.append(sample)
            logger.info(
                "%s Device %s: SNR=%sdB | Interference=%s | Bid=%s wei",
                "OK " if sample.snr_db >= 10 else "LOW",
                device.number,
                sample.snr_db,
                sample.interference_level,
                sample.bid_price,
            )
        return published

    async def run(self, stop: asyncio.Event, *, demo_microwave: bool = True) -> None:
        logger.info("Simulating %s devices every %ss", len(self.devices), self.interval_seconds)
        started = time.monotonic()
        microwave_fired = not demo_microwave or not self.devices
        while not stop.is_set():
            if not microwave_fired and time.monotonic() - started >= MICROWAVE_DELAY_SECONDS:
                self.devices[0].trigger_microwave(self._clock_ms())
                microwave_fired = True
            await asyncio.to_thread(self.publish_once)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Simulator stopped")
