from pathlib import Path
from typing import Optional

import pytest

from spectrum.decision import ActionKind, DecisionEngine, GrantPhase
from spectrum.market import MIN_PRICE_WEI, Grant, SpectrumMarket
from spectrum.market_client import LocalMarketGateway, SubmissionError
from spectrum.provider import ProviderContext, SpectrumProvider
from spectrum.schema import TelemetrySample, compute_schema_id, device_id_from_label, encode_sample
from spectrum.telemetry_log import JsonlTelemetryLog

OWNER = "0x" + "01" * 20
PROVIDER = "0x" + "aa" * 20
PUBLISHER = "0x" + "22" * 20
SCHEMA = compute_schema_id()
DEVICE = device_id_from_label("device-1")


@pytest.fixture()
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000):
        self.now_ms = now_ms

    def ms(self) -> int:
        return self.now_ms

    def seconds(self) -> int:
        return self.now_ms // 1000


class FakeGateway:
    def __init__(self, failures: Optional[list[Optional[Exception]]] = None):
        self.failures = list(failures or [])
        self.calls: list[tuple[str, bytes]] = []

    @property
    def sender(self) -> str:
        return PROVIDER

    def _next(self, action: str, device_id: bytes) -> str:
        self.calls.append((action, device_id))
        failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        return f"0x{len(self.calls):04x}"

    def grant_access(self, device_id, frequency_mhz, duration_seconds, value_wei):
        return self._next("grant", device_id)

    def revoke_access(self, device_id):
        return self._next("revoke", device_id)

    def can_transmit(self, device_id):
        return False

    def get_grant(self, device_id):
        return Grant()


def make_sample(snr: int, timestamp: int = 0) -> TelemetrySample:
    return TelemetrySample(
        timestamp=timestamp,
        device_id=DEVICE,
        frequency_mhz=2400,
        snr_db=snr,
        latitude=31_083_000,
        longitude=77_173_000,
        interference_level=0,
        bid_price=10**15,
    )


def build_log(tmp_path: Path) -> JsonlTelemetryLog:
    log = JsonlTelemetryLog(tmp_path / "telemetry.log")
    log.register_schema(SCHEMA, "signal quality")
    return log


def build_provider(gateway, log, clock: FakeClock, payment_wei: int = MIN_PRICE_WEI) -> SpectrumProvider:
    context = ProviderContext(
        gateway=gateway,
        telemetry=log,
        schema_id=SCHEMA,
        publisher=PUBLISHER,
        engine=DecisionEngine(min_snr=10),
        payment_wei=payment_wei,
        clock_ms=clock.ms,
    )
    return SpectrumProvider(context)


@pytest.mark.anyio("asyncio")
async def test_telemetry_drives_grants_and_revokes_on_local_market(tmp_path: Path):
    clock = FakeClock()
    market = SpectrumMarket(OWNER, clock=clock.seconds)
    log = build_log(tmp_path)
    provider = build_provider(LocalMarketGateway(market, PROVIDER), log, clock)

    log.append(SCHEMA, PUBLISHER, encode_sample(make_sample(12)))
    await provider.poller.tick()
    await provider.queue.join()
    assert market.can_transmit(DEVICE) is True
    assert market.get_grant(DEVICE).provider == PROVIDER
    assert provider.engine.state_for(DEVICE).phase is GrantPhase.ACTIVE

    clock.now_ms += 1000
    log.append(SCHEMA, PUBLISHER, encode_sample(make_sample(14)))
    log.append(SCHEMA, PUBLISHER, encode_sample(make_sample(8)))
    await provider.poller.tick()
    await provider.queue.join()
    assert market.can_transmit(DEVICE) is False
    assert [event.name for event in market.events] == ["AccessGranted", "AccessRevoked"]

    clock.now_ms += 1000
    log.append(SCHEMA, PUBLISHER, encode_sample(make_sample(16)))
    await provider.poller.tick()
    await provider.queue.join()
    await provider.queue.close()

    assert market.can_transmit(DEVICE) is True
    assert provider.poller.last_processed_index == 3
    assert market.total_collected == 2 * MIN_PRICE_WEI


@pytest.mark.anyio("asyncio")
async def test_rejected_grant_is_rolled_back_and_retried_on_next_sample(tmp_path: Path):
    clock = FakeClock()
    market = SpectrumMarket(OWNER, clock=clock.seconds)
    log = build_log(tmp_path)
    provider = build_provider(LocalMarketGateway(market, PROVIDER), log, clock, payment_wei=MIN_PRICE_WEI - 1)

    decision = await provider.handle_record(0, encode_sample(make_sample(12)))
    await provider.queue.join()
    assert decision.kind is ActionKind.GRANT
    assert provider.queue.failed == 1
    assert provider.engine.state_for(DEVICE).phase is GrantPhase.NO_GRANT
    assert market.can_transmit(DEVICE) is False

    provider.context.payment_wei = MIN_PRICE_WEI
    retry = await provider.handle_record(1, encode_sample(make_sample(12)))
    await provider.queue.join()
    await provider.queue.close()
    assert retry.kind is ActionKind.GRANT
    assert market.can_transmit(DEVICE) is True


@pytest.mark.anyio("asyncio")
async def test_transport_failure_on_revoke_restores_grant(tmp_path: Path):
    clock = FakeClock()
    gateway = FakeGateway(failures=[None, SubmissionError("connection reset")])
    provider = build_provider(gateway, build_log(tmp_path), clock)

    await provider.handle_record(0, encode_sample(make_sample(12)))
    await provider.handle_record(1, encode_sample(make_sample(5)))
    await provider.queue.join()

    assert [action for action, _ in gateway.calls] == ["grant", "revoke"]
    assert provider.engine.state_for(DEVICE).phase is GrantPhase.ACTIVE

    clock.now_ms += 500
    decision = await provider.handle_record(2, encode_sample(make_sample(5)))
    await provider.queue.join()
    await provider.queue.close()
    assert decision.kind is ActionKind.REVOKE
    assert provider.engine.state_for(DEVICE).phase is GrantPhase.NO_GRANT


@pytest.mark.anyio("asyncio")
async def test_undecodable_record_is_skipped(tmp_path: Path):
    gateway = FakeGateway()
    provider = build_provider(gateway, build_log(tmp_path), FakeClock())

    assert await provider.handle_record(0, b"\x00" * 5) is None
    assert gateway.calls == []
