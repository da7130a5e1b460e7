"""Settlement domain events."""

from settlement_engine.events.emitter import EventCollector, EventEmitter
from settlement_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    PaymentAuthorized,
    PaymentFailed,
    PaymentInitiated,
    PaymentRefunded,
    PaymentSucceeded,
    ProviderAccountInvalidated,
    RefundRequested,
    WebhookRejected,
    WithdrawalCompleted,
    WithdrawalFailed,
    WithdrawalRequested,
)

__all__ = [
    "EventCollector",
    "EventEmitter",
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "PaymentAuthorized",
    "PaymentFailed",
    "PaymentInitiated",
    "PaymentRefunded",
    "PaymentSucceeded",
    "ProviderAccountInvalidated",
    "RefundRequested",
    "WebhookRejected",
    "WithdrawalCompleted",
    "WithdrawalFailed",
    "WithdrawalRequested",
]
