"""Signal-quality telemetry schema and codec.

Records are ABI-encoded with the field order below; the same layout is used
by the simulator when publishing and by the provider when decoding.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple

from eth_abi import decode, encode
from eth_utils import keccak

SCHEMA_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("timestamp", "uint64"),
    ("deviceId", "bytes32"),
    ("frequency", "uint32"),
    ("snr", "int16"),
    ("latitude", "int32"),
    ("longitude", "int32"),
    ("interferenceLevel", "uint8"),
    ("bidPrice", "uint256"),
)

SIGNAL_QUALITY_SCHEMA = ",".join(f"{abi_type} {name}" for name, abi_type in SCHEMA_FIELDS)

_ABI_TYPES = [abi_type for _, abi_type in SCHEMA_FIELDS]

COORDINATE_SCALE = 1_000_000


class SchemaError(ValueError):
    pass


def compute_schema_id(schema: str = SIGNAL_QUALITY_SCHEMA) -> str:
    """Schema ids are the keccak256 hash of the schema string."""
    return "0x" + bytes(keccak(text=schema)).hex()


def device_id_from_label(label: str) -> bytes:
    raw = label.encode("utf-8")
    if len(raw) > 32:
        raise SchemaError(f"Device label {label!r} exceeds 32 bytes")
    return raw.ljust(32, b"\x00")


def device_id_hex(device_id: bytes) -> str:
    return "0x" + bytes(device_id).hex()


def _check_uint(name: str, value: int, bits: int) -> None:
    if not 0 <= value < 2**bits:
        raise SchemaError(f"{name} must fit in uint{bits} (got {value})")


def _check_int(name: str, value: int, bits: int) -> None:
    bound = 2 ** (bits - 1)
    if not -bound <= value < bound:
        raise SchemaError(f"{name} must fit in int{bits} (got {value})")


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: int
    device_id: bytes
    frequency_mhz: int
    snr_db: int
    latitude: int
    longitude: int
    interference_level: int
    bid_price: int

    def __post_init__(self) -> None:
        if not isinstance(self.device_id, (bytes, bytearray)) or len(self.device_id) != 32:
            raise SchemaError("device_id must be 32 bytes")
        _check_uint("timestamp", self.timestamp, 64)
        _check_uint("frequency_mhz", self.frequency_mhz, 32)
        _check_int("snr_db", self.snr_db, 16)
        _check_int("latitude", self.latitude, 32)
        _check_int("longitude", self.longitude, 32)
        if not 0 <= self.interference_level <= 5:
            raise SchemaError(f"interference_level must be within 0-5 (got {self.interference_level})")
        _check_uint("bid_price", self.bid_price, 256)

    @property
    def device_key(self) -> str:
        return device_id_hex(self.device_id)

    def as_tuple(self) -> tuple[Any, ...]:
        return (
            int(self.timestamp),
            bytes(self.device_id),
            int(self.frequency_mhz),
            int(self.snr_db),
            int(self.latitude),
            int(self.longitude),
            int(self.interference_level),
            int(self.bid_price),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "deviceId": self.device_key,
            "frequency": self.frequency_mhz,
            "snr": self.snr_db,
            "latitude": self.latitude / COORDINATE_SCALE,
            "longitude": self.longitude / COORDINATE_SCALE,
            "interferenceLevel": self.interference_level,
            "bidPrice": str(self.bid_price),
        }


def encode_sample(sample: TelemetrySample) -> bytes:
    return encode(_ABI_TYPES, list(sample.as_tuple()))


def decode_sample(data: bytes) -> TelemetrySample:
    try:
        values = decode(_ABI_TYPES, bytes(data))
    except Exception as exc:
        raise SchemaError(f"Malformed telemetry record: {exc}") from exc
    return TelemetrySample(*values)
