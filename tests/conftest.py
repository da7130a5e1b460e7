"""Pytest fixtures for settlement engine tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.config import NuveiSettings, ProviderCallSettings, Settings, StripeSettings
from settlement_engine.database import build_engine, build_session_factory, create_schema
from settlement_engine.events import EventCollector, EventEmitter
from settlement_engine.models import PaymentRecord
from settlement_engine.providers import ProviderRegistry, StubProvider
from settlement_engine.services.collaborators import (
    ContractInfo,
    InMemoryAccountDirectory,
    InMemoryContractDirectory,
)
from settlement_engine.services.provider_caller import ProviderCaller
from settlement_engine.services.settlement import SettlementEngine
from settlement_engine.services.webhook_reconciler import WebhookReconciler

# In-memory SQLite for tests; file databases are used where threads race
TEST_DATABASE_URL = "sqlite://"

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
NUVEI_WEBHOOK_SECRET = "nuvei_test_secret"

PAYER = "payer-1"
PAYEE = "payee-1"
CONTRACT = "contract-1"


@pytest.fixture
def db_engine():
    """Create a fresh in-memory database per test."""
    engine = build_engine(TEST_DATABASE_URL)
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker[Session]:
    return build_session_factory(db_engine)


@pytest.fixture
def stripe_stub() -> StubProvider:
    return StubProvider("stripe")


@pytest.fixture
def nuvei_stub() -> StubProvider:
    return StubProvider("nuvei")


@pytest.fixture
def registry(stripe_stub, nuvei_stub) -> ProviderRegistry:
    return ProviderRegistry({"stripe": stripe_stub, "nuvei": nuvei_stub})


@pytest.fixture
def contracts() -> InMemoryContractDirectory:
    return InMemoryContractDirectory(
        [
            ContractInfo(
                contract_ref=CONTRACT,
                payer_id=PAYER,
                payee_id=PAYEE,
                status="active",
                service_amount=10000,
                gig_ref="gig-1",
                description="Logo design",
            )
        ]
    )


@pytest.fixture
def accounts() -> InMemoryAccountDirectory:
    directory = InMemoryAccountDirectory()
    directory.link(PAYER, "stripe", "cus_payer")
    directory.link(PAYEE, "stripe", "acct_payee")
    directory.link(PAYER, "nuvei", "nuvei_payer")
    directory.link(PAYEE, "nuvei", "nuvei_payee")
    return directory


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def emitter(collector) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(collector)
    return emitter


@pytest.fixture
def caller() -> Iterator[ProviderCaller]:
    caller = ProviderCaller(
        ProviderCallSettings(timeout_seconds=5, max_attempts=3, backoff_seconds=0),
        sleep=lambda _: None,
    )
    yield caller
    caller.close()


@pytest.fixture
def engine(session_factory, registry, contracts, accounts, caller, emitter) -> SettlementEngine:
    return SettlementEngine(
        session_factory,
        registry,
        contracts,
        accounts,
        caller=caller,
        emitter=emitter,
    )


@pytest.fixture
def reconciler(session_factory, engine, registry) -> WebhookReconciler:
    return WebhookReconciler(
        session_factory,
        engine,
        registry,
        {"stripe": STRIPE_WEBHOOK_SECRET, "nuvei": NUVEI_WEBHOOK_SECRET},
    )


@pytest.fixture
def add_contract(contracts) -> Callable[..., ContractInfo]:
    """Factory adding a contract between PAYER and PAYEE."""

    def add(contract_ref: str, service_amount: int = 10000, status: str = "active", **kwargs):
        contract = ContractInfo(
            contract_ref=contract_ref,
            payer_id=kwargs.pop("payer_id", PAYER),
            payee_id=kwargs.pop("payee_id", PAYEE),
            status=status,
            service_amount=service_amount,
            **kwargs,
        )
        contracts.add(contract)
        return contract

    return add


@pytest.fixture
def pay(engine, registry) -> Callable[..., PaymentRecord]:
    """Factory running a contract payment through to succeeded."""

    def run(contract_ref: str = CONTRACT, provider: str = "stripe") -> PaymentRecord:
        result = engine.initiate(contract_ref, PAYER, provider)
        registry.get(provider).simulate_settle(result.external_ref)
        return engine.confirm(result.external_ref)

    return run


def make_settings(**overrides) -> Settings:
    """Settings for tests: in-memory database, stub providers unless overridden."""
    values = dict(
        database_url=TEST_DATABASE_URL,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        default_currency="cad",
        supported_currencies=("cad", "usd"),
        payable_contract_statuses=("pending_payment", "active", "submitted", "failed"),
        webhook_tolerance_seconds=300,
        webhook_max_attempts=5,
        stripe=StripeSettings(webhook_secret=STRIPE_WEBHOOK_SECRET),
        nuvei=NuveiSettings(webhook_secret=NUVEI_WEBHOOK_SECRET),
        provider_calls=ProviderCallSettings(timeout_seconds=5, max_attempts=3, backoff_seconds=0),
    )
    values.update(overrides)
    return Settings(**values)
