"""Spectrum access market: grant records, payment rules and expiry.

`SpectrumMarket` holds at most one grant per device. A grant is active while
its `expires_at` is in the future; expiry is evaluated lazily on every read.
Each successful `grant_access` replaces the stored record wholesale, including
when another provider's grant is still active (latest payer wins).
"""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
MIN_PRICE_WEI = 10**15
MAX_DURATION_SECONDS = 3600
MAX_UINT96 = 2**96 - 1
MAX_UINT32 = 2**32 - 1


class MarketError(Exception):
    """Base class for ledger-side rejections."""


class InsufficientPayment(MarketError):
    pass


class InvalidDuration(MarketError):
    pass


class InvalidFrequency(MarketError):
    pass


class NotProvider(MarketError):
    pass


class GrantExpired(MarketError):
    pass


class OnlyOwner(MarketError):
    pass


class WithdrawFailed(MarketError):
    pass


MARKET_ERRORS: Dict[str, type[MarketError]] = {
    cls.__name__: cls
    for cls in (
        InsufficientPayment,
        InvalidDuration,
        InvalidFrequency,
        NotProvider,
        GrantExpired,
        OnlyOwner,
        WithdrawFailed,
    )
}


def normalize_address(value: str) -> str:
    candidate = str(value).strip().lower()
    if not candidate.startswith("0x") or len(candidate) != 42:
        raise ValueError(f"Invalid address {value!r}")
    return candidate


def _device_key(device_id: bytes) -> str:
    if not isinstance(device_id, (bytes, bytearray)) or len(device_id) != 32:
        raise ValueError("device_id must be 32 bytes")
    return "0x" + bytes(device_id).hex()


@dataclass(frozen=True)
class Grant:
    provider: str = ZERO_ADDRESS
    paid_amount: int = 0
    frequency_mhz: int = 0
    expires_at: int = 0

    def is_active(self, now: int) -> bool:
        return self.expires_at > now


EMPTY_GRANT = Grant()


@dataclass(frozen=True)
class MarketEvent:
    name: str
    args: Dict[str, Any]


class SpectrumMarket:
    def __init__(
        self,
        owner: str,
        *,
        state_path: Optional[Path] = None,
        journal_path: Optional[Path] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.owner = normalize_address(owner)
        self.state_path = state_path
        self.journal_path = journal_path
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.RLock()
        self.grants: Dict[str, Grant] = {}
        self.total_collected = 0
        self.balance = 0
        self.events: List[MarketEvent] = []
        self._load()

    def _now(self) -> int:
        return int(self._clock())

    def _load(self) -> None:
        if self.state_path is None:
            return
        if not self.state_path.exists():
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.state_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        stored_owner = raw.get("owner")
        if stored_owner and normalize_address(stored_owner) != self.owner:
            logger.warning(
                "Market state %s was created by owner %s; keeping stored owner", self.state_path, stored_owner
            )
            self.owner = normalize_address(stored_owner)
        self.total_collected = int(raw.get("total_collected", 0))
        self.balance = int(raw.get("balance", 0))
        self.grants = {
            key: Grant(
                provider=str(value["provider"]),
                paid_amount=int(value["paid_amount"]),
                frequency_mhz=int(value["frequency_mhz"]),
                expires_at=int(value["expires_at"]),
            )
            for key, value in (raw.get("grants") or {}).items()
        }

    def _persist(self) -> None:
        if self.state_path is None:
            return
        tmp_path = self.state_path.with_suffix(".tmp")
        data = {
            "owner": self.owner,
            "total_collected": str(self.total_collected),
            "balance": str(self.balance),
            "grants": {key: asdict(value) for key, value in self.grants.items()},
        }
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        tmp_path.replace(self.state_path)

    def save(self) -> None:
        with self._lock:
            self._persist()

    def _emit(self, name: str, **args: Any) -> MarketEvent:
        event = MarketEvent(name=name, args=args)
        self.events.append(event)
        if not self.journal_path:
            return event
        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "logged_at": datetime.now(timezone.utc).isoformat(),
                "event": name,
                "args": {key: str(value) if isinstance(value, int) else value for key, value in args.items()},
            }
            with self.journal_path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except OSError as exc:
            # Observers are optional; the grant record is the source of truth.
            logger.warning("Failed to journal %s event: %s", name, exc)
        return event

    def grant_access(self, caller: str, device_id: bytes, frequency_mhz: int, duration_seconds: int, value: int) -> Grant:
        caller = normalize_address(caller)
        key = _device_key(device_id)
        if value < MIN_PRICE_WEI:
            raise InsufficientPayment(f"payment {value} below minimum {MIN_PRICE_WEI}")
        if duration_seconds == 0 or duration_seconds > MAX_DURATION_SECONDS:
            raise InvalidDuration(f"duration {duration_seconds}s outside 1-{MAX_DURATION_SECONDS}")
        if frequency_mhz == 0:
            raise InvalidFrequency("frequency must be non-zero")
        if value > MAX_UINT96:
            raise ValueError("payment exceeds uint96")
        if not 0 < frequency_mhz <= MAX_UINT32 or duration_seconds < 0:
            raise ValueError("frequency and duration must fit in uint32")
        with self._lock:
            now = self._now()
            grant = Grant(
                provider=caller,
                paid_amount=int(value),
                frequency_mhz=int(frequency_mhz),
                expires_at=now + int(duration_seconds),
            )
            self.grants[key] = grant
            self.total_collected += int(value)
            self.balance += int(value)
            self._persist()
            self._emit(
                "AccessGranted",
                deviceId=key,
                frequency=grant.frequency_mhz,
                duration=int(duration_seconds),
                amount=grant.paid_amount,
                provider=caller,
                timestamp=now,
            )
            return grant

    def revoke_access(self, caller: str, device_id: bytes) -> None:
        caller = normalize_address(caller)
        key = _device_key(device_id)
        with self._lock:
            now = self._now()
            grant = self.grants.get(key, EMPTY_GRANT)
            if grant.expires_at <= now:
                raise GrantExpired(f"grant for {key} expired at {grant.expires_at}")
            if grant.provider != caller:
                raise NotProvider(f"{caller} is not the provider of {key}")
            del self.grants[key]
            self._persist()
            self._emit("AccessRevoked", deviceId=key, provider=caller, timestamp=now)

    def can_transmit(self, device_id: bytes) -> bool:
        with self._lock:
            return self.get_grant(device_id).is_active(self._now())

    def get_grant(self, device_id: bytes) -> Grant:
        with self._lock:
            return self.grants.get(_device_key(device_id), EMPTY_GRANT)

    def get_grant_expiration(self, device_id: bytes) -> int:
        return self.get_grant(device_id).expires_at

    def get_balance(self) -> int:
        with self._lock:
            return self.balance

    def _sweep(self, caller: str, *, require_funds: bool) -> int:
        if normalize_address(caller) != self.owner:
            raise OnlyOwner(f"{caller} is not the market owner")
        with self._lock:
            amount = self.balance
            if require_funds and amount == 0:
                raise WithdrawFailed("no funds to withdraw")
            self.balance = 0
            self._persist()
            self._emit("FundsWithdrawn", owner=self.owner, amount=amount, timestamp=self._now())
            return amount

    def withdraw(self, caller: str) -> int:
        return self._sweep(caller, require_funds=True)

    def emergency_withdraw(self, caller: str) -> int:
        return self._sweep(caller, require_funds=False)
