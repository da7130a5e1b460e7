"""Payment record, audit trail, webhook inbox and balance guard models."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.models.base import Base, TimestampMixin, utcnow

_STATUS_CHECK = (
    "status IN ('requires_payment_method', 'processing', 'requires_capture', "
    "'succeeded', 'refund_pending', 'refunded', 'failed', 'canceled')"
)


class PaymentRecord(Base, TimestampMixin):
    """One payment for a contract, or one withdrawal by a user.

    All money columns are integer minor units. ``version`` is bumped by every
    state write; writers compare-and-swap on it.
    """

    __tablename__ = "payment_record"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    contract_ref: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    gig_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    record_type: Mapped[str] = mapped_column(String, nullable=False, default="payment")
    description: Mapped[str | None] = mapped_column(String, nullable=True)

    payer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payee_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    service_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    application_fee_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    provider_tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_payer_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_received_by_payee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(
        String, nullable=False, default="requires_payment_method"
    )
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_refs: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    succeeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_processed_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    in_flight_operation: Mapped[str | None] = mapped_column(String, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="payment_record_status_check"),
        CheckConstraint(
            "provider IN ('stripe', 'nuvei')",
            name="payment_record_provider_check",
        ),
        CheckConstraint(
            "record_type IN ('payment', 'withdrawal')",
            name="payment_record_type_check",
        ),
        CheckConstraint("service_amount > 0", name="payment_record_service_amount_check"),
        CheckConstraint(
            "total_payer_amount = service_amount + application_fee_amount + provider_tax_amount",
            name="payment_record_total_check",
        ),
        CheckConstraint(
            "in_flight_operation IS NULL OR "
            "in_flight_operation IN ('charge', 'capture', 'refund', 'payout')",
            name="payment_record_in_flight_check",
        ),
        Index("ix_payment_record_provider_external_ref", "provider", "external_ref"),
    )

    @property
    def is_withdrawal(self) -> bool:
        return self.record_type == "withdrawal"


class PaymentTransition(Base):
    """Append-only audit row for every status change."""

    __tablename__ = "payment_transition"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_record.id"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "source IN ('api', 'webhook', 'system')",
            name="payment_transition_source_check",
        ),
    )


class WebhookEvent(Base):
    """Durable inbox of authenticated provider webhook events."""

    __tablename__ = "webhook_event"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    external_event_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    external_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    account_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String, nullable=False, default="received")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider", "external_event_id", name="webhook_event_provider_event_uq"
        ),
        CheckConstraint(
            "status IN ('received', 'processed', 'ignored', 'failed', 'duplicate')",
            name="webhook_event_status_check",
        ),
        Index("ix_webhook_event_status", "status"),
    )


class BalanceGuard(Base):
    """Lock row serializing withdrawal decisions per (user, provider)."""

    __tablename__ = "balance_guard"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
