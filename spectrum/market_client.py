"""Ledger gateways used by the provider to submit grant and revoke calls.

`LocalMarketGateway` drives an in-process `SpectrumMarket`;
`SpectrumMarketClient` talks to the deployed contract through web3.py. Both
raise the same `MarketError` subclasses for ledger rejections and
`SubmissionError` for transport problems.
"""
from __future__ import annotations

import itertools
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from eth_utils import keccak
from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware

from .market import MARKET_ERRORS, Grant, MarketError, SpectrumMarket
from .signer import LocalSigner, Signer

logger = logging.getLogger(__name__)

_BYTES32 = {"internalType": "bytes32", "name": "deviceId", "type": "bytes32"}
_GRANT_COMPONENTS = [
    {"internalType": "address", "name": "provider", "type": "address"},
    {"internalType": "uint96", "name": "paidAmount", "type": "uint96"},
    {"internalType": "uint32", "name": "frequency", "type": "uint32"},
    {"internalType": "uint32", "name": "expiresAt", "type": "uint32"},
]

SPECTRUM_MARKET_ABI: list[dict[str, Any]] = [
    {"inputs": [], "stateMutability": "nonpayable", "type": "constructor"},
    *[{"inputs": [], "name": name, "type": "error"} for name in MARKET_ERRORS],
    {
        "anonymous": False,
        "inputs": [
            {**_BYTES32, "indexed": True},
            {"indexed": False, "internalType": "uint32", "name": "frequency", "type": "uint32"},
            {"indexed": False, "internalType": "uint32", "name": "duration", "type": "uint32"},
            {"indexed": False, "internalType": "uint96", "name": "amount", "type": "uint96"},
            {"indexed": True, "internalType": "address", "name": "provider", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "name": "AccessGranted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {**_BYTES32, "indexed": True},
            {"indexed": True, "internalType": "address", "name": "provider", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "name": "AccessRevoked",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "owner", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "name": "FundsWithdrawn",
        "type": "event",
    },
    {
        "inputs": [_BYTES32],
        "name": "canTransmit",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_BYTES32],
        "name": "getGrant",
        "outputs": [
            {
                "components": _GRANT_COMPONENTS,
                "internalType": "struct SpectrumMarket.Grant",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_BYTES32],
        "name": "getGrantExpiration",
        "outputs": [{"internalType": "uint32", "name": "", "type": "uint32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getBalance",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            _BYTES32,
            {"internalType": "uint32", "name": "frequency", "type": "uint32"},
            {"internalType": "uint32", "name": "duration", "type": "uint32"},
        ],
        "name": "grantAccess",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [_BYTES32],
        "name": "revokeAccess",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalCollected",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {"inputs": [], "name": "withdraw", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "emergencyWithdraw", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
]

ERROR_SELECTORS: Dict[str, type[MarketError]] = {
    "0x" + bytes(keccak(text=f"{name}()")[:4]).hex(): cls for name, cls in MARKET_ERRORS.items()
}


class SubmissionError(RuntimeError):
    """Transaction could not be submitted or confirmed (network, nonce, gas)."""


def decode_market_error(exc: BaseException) -> Optional[MarketError]:
    """Translate a web3 revert into the matching `MarketError`, if recognisable."""
    candidates = [getattr(exc, "data", None), getattr(exc, "message", None), *getattr(exc, "args", ())]
    for candidate in candidates:
        if candidate is None:
            continue
        text = candidate.hex() if isinstance(candidate, (bytes, bytearray)) else str(candidate)
        lowered = text.lower()
        for selector, cls in ERROR_SELECTORS.items():
            if selector in lowered or selector[2:] == lowered[:8]:
                return cls(text)
        for name, cls in MARKET_ERRORS.items():
            if name in text:
                return cls(text)
    return None


class MarketGateway(Protocol):
    @property
    def sender(self) -> str: ...

    def grant_access(self, device_id: bytes, frequency_mhz: int, duration_seconds: int, value_wei: int) -> Optional[str]: ...

    def revoke_access(self, device_id: bytes) -> Optional[str]: ...

    def can_transmit(self, device_id: bytes) -> bool: ...

    def get_grant(self, device_id: bytes) -> Grant: ...


class LocalMarketGateway:
    """Submits directly against an in-process market under the provider's address."""

    def __init__(self, market: SpectrumMarket, sender: str) -> None:
        self.market = market
        self._sender = sender
        self._counter = itertools.count(1)

    @property
    def sender(self) -> str:
        return self._sender

    def _receipt_id(self, action: str, device_id: bytes) -> str:
        return "0x" + bytes(keccak(text=f"{action}:{bytes(device_id).hex()}:{next(self._counter)}")).hex()

    def grant_access(self, device_id: bytes, frequency_mhz: int, duration_seconds: int, value_wei: int) -> Optional[str]:
        self.market.grant_access(self._sender, device_id, frequency_mhz, duration_seconds, value_wei)
        return self._receipt_id("grant", device_id)

    def revoke_access(self, device_id: bytes) -> Optional[str]:
        self.market.revoke_access(self._sender, device_id)
        return self._receipt_id("revoke", device_id)

    def can_transmit(self, device_id: bytes) -> bool:
        return self.market.can_transmit(device_id)

    def get_grant(self, device_id: bytes) -> Grant:
        return self.market.get_grant(device_id)


def load_contract_artifact(path: Path) -> Dict[str, Any]:
    """Read a compiled contract artifact (Hardhat/Foundry JSON with `abi` and `bytecode`)."""
    with Path(path).expanduser().open("r", encoding="utf-8") as handle:
        artifact = json.load(handle)
    bytecode = artifact.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    if not isinstance(bytecode, str) or not bytecode:
        raise ValueError(f"Artifact {path} has no bytecode")
    if not bytecode.startswith("0x"):
        bytecode = "0x" + bytecode
    return {"abi": artifact.get("abi") or SPECTRUM_MARKET_ABI, "bytecode": bytecode}


class SpectrumMarketClient:
    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        contract_address: Optional[str] = None,
        private_key: Optional[str] = None,
        signer: Optional[Signer] = None,
        dry_run: bool = False,
        grant_gas: int = 200_000,
        revoke_gas: int = 100_000,
        receipt_timeout: int = 60,
    ) -> None:
        self.web3 = Web3(Web3.HTTPProvider(rpc_url))
        self.web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.chain_id = chain_id
        self.dry_run = dry_run
        self.grant_gas = grant_gas
        self.revoke_gas = revoke_gas
        self.receipt_timeout = receipt_timeout
        self._signer: Optional[Signer] = signer
        if signer is None and private_key:
            self._signer = LocalSigner.from_key(private_key)
        if self._signer is None:
            logger.info("Market client running without signing key (dry-run=%s)", dry_run)
        self.contract = None
        if contract_address:
            self.contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(contract_address), abi=SPECTRUM_MARKET_ABI
            )

    @property
    def sender(self) -> str:
        if self._signer is None:
            raise SubmissionError("Market client missing signing key")
        return self._signer.address

    def _require_contract(self):
        if self.contract is None:
            raise SubmissionError("CONTRACT_ADDRESS is not configured")
        return self.contract

    def sender_balance(self) -> int:
        return int(self.web3.eth.get_balance(self.sender))

    def _send(self, tx: dict[str, Any]) -> str:
        sender = self.sender
        tx = dict(tx)
        tx.setdefault("chainId", self.chain_id)
        tx["nonce"] = self.web3.eth.get_transaction_count(sender, block_identifier="pending")
        if "maxFeePerGas" not in tx and "gasPrice" not in tx:
            tx["gasPrice"] = self.web3.eth.gas_price * 2
        raw_tx = self._signer.sign_transaction(tx)
        tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        return "0x" + bytes(tx_hash).hex()

    def _wait(self, tx_hash: str):
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as exc:
            raise SubmissionError(f"Timed out waiting for tx receipt {tx_hash}: {exc}") from exc
        raw_status = getattr(receipt, "status", None)
        if raw_status is None and isinstance(receipt, dict):
            raw_status = receipt.get("status", 1)
        status = 1 if raw_status is None else int(raw_status)
        if status != 1:
            raise SubmissionError(f"Transaction {tx_hash} reverted (status={status})")
        return receipt

    def _transact(self, function_call, *, value: int, gas: int) -> Optional[str]:
        if self._signer is None or self.dry_run:
            logger.info(
                "Dry-run transaction: would call %s (value=%s wei)",
                getattr(function_call, "fn_name", "contract function"),
                value,
            )
            return None
        sender = self.sender
        try:
            # Simulate first so ledger rejections surface as typed errors.
            function_call.call({"from": sender, "value": value})
        except Exception as exc:
            market_error = decode_market_error(exc)
            if market_error is not None:
                raise market_error from exc
            raise SubmissionError(f"Call simulation failed: {exc}") from exc
        try:
            tx = function_call.build_transaction({"from": sender, "value": value, "gas": gas})
            tx_hash = self._send(tx)
        except MarketError:
            raise
        except Exception as exc:
            market_error = decode_market_error(exc)
            if market_error is not None:
                raise market_error from exc
            raise SubmissionError(f"Transaction submission failed: {exc}") from exc
        self._wait(tx_hash)
        return tx_hash

    def grant_access(self, device_id: bytes, frequency_mhz: int, duration_seconds: int, value_wei: int) -> Optional[str]:
        contract = self._require_contract()
        call = contract.functions.grantAccess(bytes(device_id), int(frequency_mhz), int(duration_seconds))
        return self._transact(call, value=int(value_wei), gas=self.grant_gas)

    def revoke_access(self, device_id: bytes) -> Optional[str]:
        contract = self._require_contract()
        call = contract.functions.revokeAccess(bytes(device_id))
        return self._transact(call, value=0, gas=self.revoke_gas)

    def can_transmit(self, device_id: bytes) -> bool:
        return bool(self._require_contract().functions.canTransmit(bytes(device_id)).call())

    def get_grant(self, device_id: bytes) -> Grant:
        provider, paid_amount, frequency, expires_at = (
            self._require_contract().functions.getGrant(bytes(device_id)).call()
        )
        return Grant(
            provider=str(provider).lower(),
            paid_amount=int(paid_amount),
            frequency_mhz=int(frequency),
            expires_at=int(expires_at),
        )

    def get_grant_expiration(self, device_id: bytes) -> int:
        return int(self._require_contract().functions.getGrantExpiration(bytes(device_id)).call())

    def get_balance(self) -> int:
        return int(self._require_contract().functions.getBalance().call())

    def owner(self) -> str:
        return str(self._require_contract().functions.owner().call()).lower()

    def total_collected(self) -> int:
        return int(self._require_contract().functions.totalCollected().call())

    def withdraw(self) -> Optional[str]:
        return self._transact(self._require_contract().functions.withdraw(), value=0, gas=self.revoke_gas)

    def emergency_withdraw(self) -> Optional[str]:
        return self._transact(
            self._require_contract().functions.emergencyWithdraw(), value=0, gas=self.revoke_gas
        )

    def deploy(self, artifact: Dict[str, Any], gas: int = 2_000_000) -> str:
        """Deploy the market contract and return its address."""
        if self._signer is None:
            raise SubmissionError("Deploying requires a signing key")
        factory = self.web3.eth.contract(abi=artifact["abi"], bytecode=artifact["bytecode"])
        try:
            tx = factory.constructor().build_transaction({"from": self.sender, "value": 0, "gas": gas})
            tx_hash = self._send(tx)
        except Exception as exc:
            raise SubmissionError(f"Deployment failed: {exc}") from exc
        receipt = self._wait(tx_hash)
        address = getattr(receipt, "contractAddress", None)
        if address is None and isinstance(receipt, dict):
            address = receipt.get("contractAddress")
        if not address:
            raise SubmissionError(f"Deployment receipt for {tx_hash} has no contract address")
        logger.info("SpectrumMarket deployed at %s (tx=%s)", address, tx_hash)
        self.contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=SPECTRUM_MARKET_ABI)
        return str(address)
