"""Per-device grant decisions driven by telemetry SNR.

The engine keeps a provider-local `DeviceState` per device. It is a hint used
to suppress redundant submissions and is updated optimistically before the
ledger confirms; the ledger's grant record stays authoritative. Failed
submissions roll the state back so the next sample can retry.
"""
from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .schema import TelemetrySample

logger = logging.getLogger(__name__)

GRANT_FREQUENCY_MHZ = 2400
GRANT_DURATION_SECONDS = 10


class GrantPhase(str, enum.Enum):
    NO_GRANT = "no_grant"
    PENDING_GRANT = "pending_grant"
    ACTIVE = "active"
    PENDING_REVOKE = "pending_revoke"


class ActionKind(str, enum.Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    NO_ACTION = "no_action"


@dataclass(frozen=True)
class DeviceState:
    phase: GrantPhase = GrantPhase.NO_GRANT
    grant_expires_local: int = 0
    last_snr: int = 0

    @property
    def has_grant(self) -> bool:
        return self.phase in (GrantPhase.PENDING_GRANT, GrantPhase.ACTIVE)


@dataclass(frozen=True)
class Decision:
    kind: ActionKind
    device_id: bytes
    snr_db: int
    previous: DeviceState
    applied: DeviceState
    sequence: int = 0
    frequency_mhz: int = GRANT_FREQUENCY_MHZ
    duration_seconds: int = GRANT_DURATION_SECONDS

    @property
    def device_key(self) -> str:
        return "0x" + bytes(self.device_id).hex()


class DecisionEngine:
    def __init__(
        self,
        min_snr: int = 10,
        *,
        frequency_mhz: int = GRANT_FREQUENCY_MHZ,
        duration_seconds: int = GRANT_DURATION_SECONDS,
    ) -> None:
        self.min_snr = min_snr
        self.frequency_mhz = frequency_mhz
        self.duration_seconds = duration_seconds
        self._states: Dict[bytes, DeviceState] = {}
        # Sequence of the latest grant/revoke decision per device.
        self._latest_action: Dict[bytes, int] = {}
        self._sequence = itertools.count(1)

    def state_for(self, device_id: bytes) -> DeviceState:
        return self._states.get(bytes(device_id), DeviceState())

    def decide(self, sample: TelemetrySample, now_ms: int) -> Decision:
        """Map one sample to a grant, revoke or no-op, updating local state optimistically."""
        device_id = bytes(sample.device_id)
        current = self.state_for(device_id)
        should_grant = sample.snr_db >= self.min_snr
        expired = current.grant_expires_local < now_ms

        if should_grant and (not current.has_grant or expired):
            kind = ActionKind.GRANT
            applied = DeviceState(
                phase=GrantPhase.PENDING_GRANT,
                grant_expires_local=now_ms + self.duration_seconds * 1000,
                last_snr=sample.snr_db,
            )
        elif not should_grant and current.has_grant and not expired:
            kind = ActionKind.REVOKE
            applied = DeviceState(phase=GrantPhase.PENDING_REVOKE, grant_expires_local=0, last_snr=sample.snr_db)
        else:
            kind = ActionKind.NO_ACTION
            applied = replace(current, last_snr=sample.snr_db)

        sequence = 0
        if kind is not ActionKind.NO_ACTION:
            sequence = next(self._sequence)
            self._latest_action[device_id] = sequence
        self._states[device_id] = applied
        return Decision(
            kind=kind,
            device_id=device_id,
            snr_db=sample.snr_db,
            previous=current,
            applied=applied,
            sequence=sequence,
            frequency_mhz=self.frequency_mhz,
            duration_seconds=self.duration_seconds,
        )

    def _is_latest(self, decision: Decision) -> bool:
        return decision.sequence != 0 and self._latest_action.get(decision.device_id) == decision.sequence

    def confirm(self, decision: Decision) -> None:
        if not self._is_latest(decision):
            return
        current = self.state_for(decision.device_id)
        if decision.kind is ActionKind.GRANT:
            self._states[decision.device_id] = replace(current, phase=GrantPhase.ACTIVE)
        elif decision.kind is ActionKind.REVOKE:
            self._states[decision.device_id] = replace(current, phase=GrantPhase.NO_GRANT)

    def rollback(self, decision: Decision, reason: Optional[str] = None) -> None:
        """Restore the pre-decision state after a failed submission.

        A failed grant returns the device to its pre-grant state; a failed
        revoke returns it to the granted state. Superseded decisions are left
        alone since a newer action already owns the device's state.
        """
        if not self._is_latest(decision):
            return
        previous = decision.previous
        if decision.kind is ActionKind.REVOKE:
            # The grant this revoke targeted was submitted ahead of it.
            previous = replace(previous, phase=GrantPhase.ACTIVE)
        elif previous.phase is GrantPhase.PENDING_REVOKE:
            previous = replace(previous, phase=GrantPhase.NO_GRANT)
        current = self.state_for(decision.device_id)
        self._states[decision.device_id] = replace(previous, last_snr=current.last_snr)
        logger.info(
            "[%s] Rolled back %s to %s%s",
            decision.device_key[:18],
            decision.kind.value,
            previous.phase.value,
            f" ({reason})" if reason else "",
        )
