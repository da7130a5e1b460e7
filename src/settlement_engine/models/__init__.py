"""ORM models."""

from settlement_engine.models.base import Base, TimestampMixin
from settlement_engine.models.payment import (
    BalanceGuard,
    PaymentRecord,
    PaymentTransition,
    WebhookEvent,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PaymentRecord",
    "PaymentTransition",
    "WebhookEvent",
    "BalanceGuard",
]
