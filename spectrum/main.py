"""CLI entrypoints for the provider, simulator, schema registration and deploy roles."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from .config import SpectrumSettings, load_settings
from .decision import DecisionEngine
from .market import SpectrumMarket
from .market_client import (
    LocalMarketGateway,
    MarketGateway,
    SpectrumMarketClient,
    SubmissionError,
    load_contract_artifact,
)
from .provider import ProviderContext, SpectrumProvider
from .schema import SIGNAL_QUALITY_SCHEMA, compute_schema_id
from .signer import LocalSigner, SignerError
from .simulator import SignalSimulator
from .telemetry_log import JsonlTelemetryLog, TelemetryLogError

logger = logging.getLogger(__name__)


class StartupError(RuntimeError):
    pass


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def _load_settings() -> SpectrumSettings:
    try:
        settings = load_settings()
    except ValidationError as exc:
        configure_logging()
        raise StartupError(f"Invalid configuration: {exc}") from exc
    configure_logging(settings.log_level)
    return settings


def _require_signer(settings: SpectrumSettings) -> LocalSigner:
    if not settings.private_key:
        raise StartupError("PRIVATE_KEY must be set")
    try:
        return LocalSigner.from_key(settings.private_key)
    except SignerError as exc:
        raise StartupError(str(exc)) from exc


def _build_gateway(settings: SpectrumSettings, signer: LocalSigner) -> MarketGateway:
    if settings.market_backend == "web3":
        if not settings.contract_address:
            raise StartupError("CONTRACT_ADDRESS must be set when MARKET_BACKEND=web3")
        client = SpectrumMarketClient(
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            contract_address=settings.contract_address,
            signer=signer,
            dry_run=settings.dry_run,
            grant_gas=settings.grant_gas,
            revoke_gas=settings.revoke_gas,
            receipt_timeout=settings.receipt_timeout_seconds,
        )
        try:
            balance = client.sender_balance()
        except Exception as exc:
            raise StartupError(f"Unable to read provider balance from {settings.rpc_url}: {exc}") from exc
        if balance == 0 and not settings.dry_run:
            raise StartupError(f"Provider wallet {signer.address} has no funds")
        logger.info("Provider wallet %s balance=%s wei", signer.address, balance)
        return client

    market = SpectrumMarket(
        settings.market_owner or signer.address,
        state_path=settings.market_state_path,
        journal_path=settings.market_events_path,
    )
    logger.info("Using local market state %s (owner=%s)", settings.market_state_path, market.owner)
    return LocalMarketGateway(market, signer.address)


def _run(main: Callable[[asyncio.Event], Awaitable[None]]) -> None:
    async def runner() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, stop.set)
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-POSIX loops
            pass
        await main(stop)

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        logger.info("Stopped via keyboard interrupt")


def _entrypoint(role: str, body: Callable[[], None]) -> None:
    try:
        body()
    except StartupError as exc:
        logger.error("%s startup failed: %s", role, exc)
        sys.exit(1)
    sys.exit(0)


def _provider() -> None:
    settings = _load_settings()
    signer = _require_signer(settings)
    schema_id = settings.schema_id or compute_schema_id(SIGNAL_QUALITY_SCHEMA)
    if not settings.publisher_address:
        raise StartupError("PUBLISHER_ADDRESS must be set")

    gateway = _build_gateway(settings, signer)
    context = ProviderContext(
        gateway=gateway,
        telemetry=JsonlTelemetryLog(settings.telemetry_log_path),
        schema_id=schema_id,
        publisher=settings.publisher_address,
        engine=DecisionEngine(min_snr=settings.min_snr),
        payment_wei=settings.grant_payment_wei,
        poll_interval_seconds=settings.poll_interval_seconds,
        poll_max_backoff_seconds=settings.poll_max_backoff_seconds,
    )
    logger.info("Starting spectrum provider (backend=%s)", settings.market_backend)
    _run(SpectrumProvider(context).run)
    logger.info("Provider shutting down")


def _simulator() -> None:
    settings = _load_settings()
    signer = _require_signer(settings)
    schema_id = settings.schema_id or compute_schema_id(SIGNAL_QUALITY_SCHEMA)
    telemetry = JsonlTelemetryLog(settings.telemetry_log_path)
    try:
        registered = telemetry.is_schema_registered(schema_id)
    except TelemetryLogError as exc:
        raise StartupError(str(exc)) from exc
    if not registered:
        raise StartupError(f"Schema {schema_id} is not registered; run spectrum-register-schema first")

    simulator = SignalSimulator(
        telemetry,
        signer.address,
        num_devices=settings.num_devices,
        schema_id=schema_id,
        interval_seconds=settings.publish_interval_seconds,
    )
    logger.info("Device publisher %s streaming schema %s", signer.address, schema_id)
    _run(simulator.run)
    logger.info("Simulator shutting down")


def _register_schema() -> None:
    settings = _load_settings()
    signer = _require_signer(settings)
    schema_id = compute_schema_id(SIGNAL_QUALITY_SCHEMA)
    telemetry = JsonlTelemetryLog(settings.telemetry_log_path)
    logger.info("Registering signal quality schema %s", schema_id)
    try:
        created = telemetry.register_schema(schema_id, SIGNAL_QUALITY_SCHEMA)
    except TelemetryLogError as exc:
        raise StartupError(f"Schema registration failed: {exc}") from exc
    if created:
        logger.info("Schema registered")
    else:
        logger.info("Schema already registered")
    logger.info("SCHEMA_ID=%s", schema_id)
    logger.info("PUBLISHER_ADDRESS=%s", signer.address)


def _deploy() -> None:
    settings = _load_settings()
    signer = _require_signer(settings)
    if settings.market_backend == "local":
        market = SpectrumMarket(
            settings.market_owner or signer.address,
            state_path=settings.market_state_path,
            journal_path=settings.market_events_path,
        )
        market.save()
        logger.info("Local SpectrumMarket initialised at %s (owner=%s)", settings.market_state_path, market.owner)
        return

    if not settings.contract_artifact_path:
        raise StartupError("CONTRACT_ARTIFACT_PATH must point at the compiled SpectrumMarket artifact")
    try:
        artifact = load_contract_artifact(settings.contract_artifact_path)
    except (OSError, ValueError) as exc:
        raise StartupError(f"Unable to load contract artifact: {exc}") from exc
    client = SpectrumMarketClient(
        rpc_url=settings.rpc_url,
        chain_id=settings.chain_id,
        signer=signer,
        receipt_timeout=settings.receipt_timeout_seconds,
    )
    try:
        address = client.deploy(artifact)
    except SubmissionError as exc:
        raise StartupError(str(exc)) from exc
    logger.info("CONTRACT_ADDRESS=%s", address)


def provider_main() -> None:
    _entrypoint("provider", _provider)


def simulator_main() -> None:
    _entrypoint("simulator", _simulator)


def register_schema_main() -> None:
    _entrypoint("register-schema", _register_schema)


def deploy_main() -> None:
    _entrypoint("deploy", _deploy)


def main(argv: Optional[list[str]] = None) -> None:
    roles = {
        "provider": provider_main,
        "simulator": simulator_main,
        "register-schema": register_schema_main,
        "deploy": deploy_main,
    }
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or args[0] not in roles:
        configure_logging()
        logger.error("Usage: python -m spectrum.main {%s}", ",".join(roles))
        sys.exit(1)
    roles[args[0]]()


if __name__ == "__main__":
    main()
