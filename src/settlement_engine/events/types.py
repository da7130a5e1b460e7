"""Settlement domain events.

Each event is a frozen dataclass carrying an ``EventMetadata`` envelope. The
engine publishes them only after the transaction that produced them has
committed, so a subscriber never observes a rolled-back change.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    ACCOUNT = "account"
    SECURITY = "security"


@dataclass(frozen=True)
class EventMetadata:
    """Envelope shared by every event.

    ``actor_type`` is one of ``user``, ``system`` or ``webhook``; ``actor_id``
    is empty when a provider notification drove the change.
    """

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID
    actor_id: str | None
    actor_type: str
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = "system",
        source_service: str = "settlement",
    ) -> EventMetadata:
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return type(self).__name__

    @property
    def category(self) -> EventCategory:
        raise NotImplementedError(f"{type(self).__name__} has no category")

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-ready dict, with ``event_type`` added for consumers."""
        data = _jsonable(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _jsonable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(item) for item in obj]
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentInitiated(DomainEvent):
    """A charge was opened with the provider for a contract."""

    payment_id: UUID
    contract_ref: str
    provider: str
    payer_id: str
    payee_id: str
    total_payer_amount: int
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentSucceeded(DomainEvent):
    """Funds were collected; the contract may be marked complete."""

    payment_id: UUID
    contract_ref: str | None
    provider: str
    payee_id: str
    amount_received_by_payee: int
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentAuthorized(DomainEvent):
    """Funds are held in escrow awaiting release."""

    payment_id: UUID
    contract_ref: str | None
    provider: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    payment_id: UUID
    contract_ref: str | None
    provider: str
    status: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundRequested(DomainEvent):
    payment_id: UUID
    contract_ref: str | None
    provider: str
    refund_ref: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class PaymentRefunded(DomainEvent):
    """The provider confirmed the refund."""

    payment_id: UUID
    contract_ref: str | None
    provider: str
    total_payer_amount: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


# =============================================================================
# Withdrawal Events
# =============================================================================


@dataclass(frozen=True)
class WithdrawalRequested(DomainEvent):
    withdrawal_id: UUID
    user_id: str
    provider: str
    amount: int
    currency: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.WITHDRAWAL


@dataclass(frozen=True)
class WithdrawalCompleted(DomainEvent):
    withdrawal_id: UUID
    user_id: str
    provider: str
    amount: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.WITHDRAWAL


@dataclass(frozen=True)
class WithdrawalFailed(DomainEvent):
    withdrawal_id: UUID
    user_id: str
    provider: str
    amount: int
    error_code: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.WITHDRAWAL


# =============================================================================
# Account / Security Events
# =============================================================================


@dataclass(frozen=True)
class ProviderAccountInvalidated(DomainEvent):
    """A connected account was rejected by the provider and unlinked."""

    provider: str
    account_ref: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.ACCOUNT


@dataclass(frozen=True)
class WebhookRejected(DomainEvent):
    """A webhook delivery failed signature or freshness checks."""

    provider: str
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.SECURITY
