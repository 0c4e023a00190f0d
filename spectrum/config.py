"""Settings loader for the spectrum provider and simulator."""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
BYTES32_PATTERN = r"^0x[a-fA-F0-9]{64}$"


class SpectrumSettings(BaseSettings):
    rpc_url: str = Field(default="https://dream-rpc.somnia.network", validation_alias="RPC_URL")
    chain_id: int = Field(default=50312, validation_alias="CHAIN_ID")
    private_key: Optional[str] = Field(default=None, validation_alias="PRIVATE_KEY")

    contract_address: Optional[str] = Field(default=None, validation_alias="CONTRACT_ADDRESS")
    contract_artifact_path: Optional[Path] = Field(default=None, validation_alias="CONTRACT_ARTIFACT_PATH")
    schema_id: Optional[str] = Field(default=None, validation_alias="SCHEMA_ID")
    publisher_address: Optional[str] = Field(default=None, validation_alias="PUBLISHER_ADDRESS")

    min_snr: int = Field(default=10, validation_alias="MIN_SNR")
    num_devices: int = Field(default=3, validation_alias="NUM_DEVICES")

    market_backend: Literal["local", "web3"] = Field(default="local", validation_alias="MARKET_BACKEND")
    market_state_path: Path = Field(default=Path("data/market.json"), validation_alias="MARKET_STATE_PATH")
    market_events_path: Optional[Path] = Field(
        default=Path("data/market-events.log"), validation_alias="MARKET_EVENTS_PATH"
    )
    market_owner: Optional[str] = Field(default=None, validation_alias="MARKET_OWNER")
    telemetry_log_path: Path = Field(default=Path("data/telemetry.log"), validation_alias="TELEMETRY_LOG_PATH")

    poll_interval_seconds: float = Field(default=0.5, validation_alias="POLL_INTERVAL_SECONDS")
    poll_max_backoff_seconds: float = Field(default=8.0, validation_alias="POLL_MAX_BACKOFF_SECONDS")
    publish_interval_seconds: float = Field(default=1.0, validation_alias="PUBLISH_INTERVAL_SECONDS")

    grant_payment_wei: int = Field(default=10**15, validation_alias="GRANT_PAYMENT_WEI")
    grant_gas: int = Field(default=200_000, validation_alias="GRANT_GAS")
    revoke_gas: int = Field(default=100_000, validation_alias="REVOKE_GAS")
    receipt_timeout_seconds: int = Field(default=60, validation_alias="RECEIPT_TIMEOUT_SECONDS")
    dry_run: bool = Field(default=False, validation_alias="DRY_RUN")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("contract_address", "publisher_address", "market_owner")
    @classmethod
    def validate_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        candidate = value.strip()
        if not candidate.startswith("0x") or len(candidate) != 42:
            raise ValueError("address must be a 42-character hex string")
        try:
            int(candidate[2:], 16)
        except ValueError as exc:
            raise ValueError("address must be a valid hex string") from exc
        return candidate

    @field_validator("schema_id")
    @classmethod
    def validate_schema_id(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        candidate = value.strip().lower()
        if not candidate.startswith("0x") or len(candidate) != 66:
            raise ValueError("SCHEMA_ID must be a 32-byte hex string")
        return candidate

    @field_validator("private_key")
    @classmethod
    def normalize_private_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        candidate = value.strip()
        if not candidate.startswith("0x"):
            candidate = "0x" + candidate
        return candidate

    @field_validator(
        "num_devices",
        "grant_payment_wei",
        "grant_gas",
        "revoke_gas",
        "receipt_timeout_seconds",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "poll_interval_seconds",
        "poll_max_backoff_seconds",
        "publish_interval_seconds",
    )
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("min_snr")
    @classmethod
    def validate_snr(cls, value: int) -> int:
        if not -(2**15) <= value < 2**15:
            raise ValueError("MIN_SNR must fit in an int16")
        return value

    @model_validator(mode="after")
    def validate_backoff(self) -> "SpectrumSettings":
        if self.poll_max_backoff_seconds < self.poll_interval_seconds:
            raise ValueError("POLL_MAX_BACKOFF_SECONDS must not be below POLL_INTERVAL_SECONDS")
        if self.market_backend == "web3" and not self.private_key and not self.dry_run:
            raise ValueError("PRIVATE_KEY must be set when MARKET_BACKEND=web3")
        return self


def load_settings(**overrides) -> SpectrumSettings:
    """Build settings from the environment (and `.env`), applying explicit overrides."""
    return SpectrumSettings(**overrides)
