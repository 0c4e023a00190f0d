import json
from pathlib import Path

import pytest

from spectrum.market import (
    EMPTY_GRANT,
    MIN_PRICE_WEI,
    GrantExpired,
    InsufficientPayment,
    InvalidDuration,
    InvalidFrequency,
    NotProvider,
    OnlyOwner,
    SpectrumMarket,
    WithdrawFailed,
)

OWNER = "0x" + "01" * 20
PROVIDER = "0x" + "aa" * 20
OTHER = "0x" + "bb" * 20
DEVICE = b"\xaa" * 32


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def market(clock):
    return SpectrumMarket(OWNER, clock=clock)


def test_grant_rejects_bad_payment_duration_and_frequency(market):
    with pytest.raises(InsufficientPayment):
        market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI - 1)
    with pytest.raises(InvalidDuration):
        market.grant_access(PROVIDER, DEVICE, 2400, 0, MIN_PRICE_WEI)
    with pytest.raises(InvalidDuration):
        market.grant_access(PROVIDER, DEVICE, 2400, 3601, MIN_PRICE_WEI)
    with pytest.raises(InvalidFrequency):
        market.grant_access(PROVIDER, DEVICE, 0, 10, MIN_PRICE_WEI)

    grant = market.grant_access(PROVIDER, DEVICE, 2400, 3600, MIN_PRICE_WEI)
    assert grant.expires_at == market._now() + 3600
    assert market.total_collected == MIN_PRICE_WEI
    assert [event.name for event in market.events] == ["AccessGranted"]


def test_latest_grant_fully_replaces_previous(market, clock):
    market.grant_access(PROVIDER, DEVICE, 2400, 100, 3 * MIN_PRICE_WEI)
    clock.now += 5
    market.grant_access(OTHER, DEVICE, 5800, 10, MIN_PRICE_WEI)

    grant = market.get_grant(DEVICE)
    assert grant.provider == OTHER
    assert grant.paid_amount == MIN_PRICE_WEI
    assert grant.frequency_mhz == 5800
    assert grant.expires_at == clock.now + 10
    assert market.total_collected == 4 * MIN_PRICE_WEI
    assert market.get_balance() == 4 * MIN_PRICE_WEI


def test_can_transmit_tracks_expiry_lazily(market, clock):
    assert market.can_transmit(DEVICE) is False
    assert market.get_grant(DEVICE) == EMPTY_GRANT

    market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI)
    assert market.can_transmit(DEVICE) is True
    assert market.get_grant_expiration(DEVICE) == clock.now + 10

    clock.now += 9
    assert market.can_transmit(DEVICE) is True
    clock.now += 1
    assert market.can_transmit(DEVICE) is False
    # Expired records stay in storage until overwritten.
    assert market.get_grant(DEVICE).provider == PROVIDER

    market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI)
    assert market.can_transmit(DEVICE) is True


def test_revoke_requires_provider_and_active_grant(market, clock):
    market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI)

    with pytest.raises(NotProvider):
        market.revoke_access(OTHER, DEVICE)

    clock.now += 10
    with pytest.raises(GrantExpired):
        market.revoke_access(PROVIDER, DEVICE)
    with pytest.raises(GrantExpired):
        market.revoke_access(OTHER, DEVICE)


def test_second_revoke_fails_after_grant_is_deleted(market):
    market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI)
    market.revoke_access(PROVIDER, DEVICE)

    assert market.get_grant(DEVICE) == EMPTY_GRANT
    assert market.can_transmit(DEVICE) is False
    assert market.events[-1].name == "AccessRevoked"

    with pytest.raises(GrantExpired):
        market.revoke_access(PROVIDER, DEVICE)


def test_withdraw_is_owner_only(market):
    with pytest.raises(WithdrawFailed):
        market.withdraw(OWNER)

    market.grant_access(PROVIDER, DEVICE, 2400, 10, 2 * MIN_PRICE_WEI)
    with pytest.raises(OnlyOwner):
        market.withdraw(PROVIDER)
    with pytest.raises(OnlyOwner):
        market.emergency_withdraw(PROVIDER)

    assert market.withdraw(OWNER) == 2 * MIN_PRICE_WEI
    assert market.get_balance() == 0
    assert market.total_collected == 2 * MIN_PRICE_WEI
    assert market.emergency_withdraw(OWNER) == 0
    assert market.events[-1].name == "FundsWithdrawn"


def test_state_and_events_persist(tmp_path: Path, clock):
    state = tmp_path / "market.json"
    journal = tmp_path / "events.log"
    market = SpectrumMarket(OWNER, state_path=state, journal_path=journal, clock=clock)
    market.grant_access(PROVIDER, DEVICE, 2400, 10, MIN_PRICE_WEI)

    reloaded = SpectrumMarket(OTHER, state_path=state, clock=clock)
    assert reloaded.owner == OWNER
    assert reloaded.get_grant(DEVICE) == market.get_grant(DEVICE)
    assert reloaded.total_collected == MIN_PRICE_WEI

    lines = journal.read_text().strip().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "AccessGranted"
    assert entry["args"]["deviceId"] == "0x" + "aa" * 32
    assert entry["args"]["amount"] == str(MIN_PRICE_WEI)
    assert entry["args"]["provider"] == PROVIDER
