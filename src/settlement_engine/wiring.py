"""Assembles the engine, reconciler and their collaborators from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.calculators import FeeCalculator
from settlement_engine.config import Settings
from settlement_engine.database import build_engine, build_session_factory, create_schema
from settlement_engine.events import EventEmitter
from settlement_engine.providers.registry import ProviderRegistry
from settlement_engine.services.collaborators import (
    AccountDirectory,
    ContractDirectory,
    InMemoryAccountDirectory,
    InMemoryContractDirectory,
)
from settlement_engine.services.provider_caller import ProviderCaller
from settlement_engine.services.settlement import SettlementEngine
from settlement_engine.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


@dataclass
class SettlementServices:
    """Everything the API and CLI need, with one shutdown hook."""

    settings: Settings
    session_factory: sessionmaker[Session]
    providers: ProviderRegistry
    contracts: ContractDirectory
    accounts: AccountDirectory
    emitter: EventEmitter
    caller: ProviderCaller
    engine: SettlementEngine
    reconciler: WebhookReconciler

    def close(self) -> None:
        """Release provider clients and the call pool."""
        self.providers.close()
        self.caller.close()


def webhook_secrets(settings: Settings) -> dict[str, str]:
    """Webhook signing secret per provider; unset secrets are left out."""
    secrets = {
        "stripe": settings.stripe.webhook_secret,
        "nuvei": settings.nuvei.webhook_secret,
    }
    return {name: secret for name, secret in secrets.items() if secret}


def build_services(
    settings: Settings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    providers: ProviderRegistry | None = None,
    contracts: ContractDirectory | None = None,
    accounts: AccountDirectory | None = None,
    emitter: EventEmitter | None = None,
    create_tables: bool = False,
) -> SettlementServices:
    """Build the service graph.

    Without explicit collaborators, the contract and account directories are
    in-memory and providers fall back to stubs where credentials are absent.
    """
    if session_factory is None:
        db_engine = build_engine(settings.database_url, echo=settings.debug)
        if create_tables:
            create_schema(db_engine)
        session_factory = build_session_factory(db_engine)

    if contracts is None:
        logger.warning("No contract directory supplied, using an empty in-memory directory")
        contracts = InMemoryContractDirectory()
    if accounts is None:
        logger.warning("No account directory supplied, using an empty in-memory directory")
        accounts = InMemoryAccountDirectory()

    providers = providers or ProviderRegistry.from_settings(settings)
    emitter = emitter or EventEmitter()
    caller = ProviderCaller(settings.provider_calls)

    engine = SettlementEngine(
        session_factory,
        providers,
        contracts,
        accounts,
        fee_calculator=FeeCalculator(settings.fees),
        caller=caller,
        emitter=emitter,
        default_currency=settings.default_currency,
        payable_statuses=settings.payable_contract_statuses,
        capture_manually=settings.stripe.capture_manually,
    )
    reconciler = WebhookReconciler(
        session_factory,
        engine,
        providers,
        webhook_secrets(settings),
        tolerance_seconds=settings.webhook_tolerance_seconds,
        max_attempts=settings.webhook_max_attempts,
        emitter=emitter,
    )
    return SettlementServices(
        settings=settings,
        session_factory=session_factory,
        providers=providers,
        contracts=contracts,
        accounts=accounts,
        emitter=emitter,
        caller=caller,
        engine=engine,
        reconciler=reconciler,
    )
