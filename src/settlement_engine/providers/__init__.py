"""Payment provider adapters."""

from settlement_engine.providers.base import (
    AccountStatus,
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    EventKind,
    PaymentProvider,
    PayoutResult,
    PayoutStatus,
    Provider,
    ProviderEvent,
    RefundResult,
)
from settlement_engine.providers.registry import ProviderRegistry
from settlement_engine.providers.stub import StubProvider

__all__ = [
    "AccountStatus",
    "ChargeRequest",
    "ChargeResult",
    "ChargeStatus",
    "EventKind",
    "PaymentProvider",
    "PayoutResult",
    "PayoutStatus",
    "Provider",
    "ProviderEvent",
    "RefundResult",
    "ProviderRegistry",
    "StubProvider",
]
