"""Pydantic schemas for API request/response models.

JSON bodies use camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base schema: camelCase on the wire, built from ORM objects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Errors
# ============================================================================


class ErrorResponse(BaseModel):
    """Error envelope for every failed request."""

    code: str
    detail: str


# ============================================================================
# Payments
# ============================================================================


class FeeBreakdownResponse(ApiModel):
    service_amount: int
    application_fee_amount: int
    provider_tax_amount: int
    total_payer_amount: int
    amount_received_by_payee: int


class PaymentIntentResponse(ApiModel):
    """Result of opening a charge."""

    payment_id: UUID
    external_ref: str
    status: str
    client_secret: str | None = None
    session_id: str | None = None
    fees: FeeBreakdownResponse


class ConfirmRequest(ApiModel):
    external_transaction_id: str = Field(min_length=1)
    # Checkout session token, for providers that report the transaction id only at checkout end
    session_id: str | None = Field(default=None, min_length=1)


class PaymentRecordResponse(ApiModel):
    """Summary of a payment or withdrawal record.

    Provider payloads are never exposed; only our own columns are.
    """

    id: UUID
    contract_ref: str | None = None
    gig_ref: str | None = None
    provider: str
    record_type: str
    description: str | None = None
    payer_id: str
    payee_id: str
    service_amount: int
    application_fee_amount: int
    provider_tax_amount: int
    total_payer_amount: int
    amount_received_by_payee: int
    currency: str
    status: str
    external_ref: str | None = None
    succeeded_at: datetime | None = None
    refunded_at: datetime | None = None
    last_error_code: str | None = None
    created_at: datetime
    updated_at: datetime


class PaymentHistoryResponse(ApiModel):
    items: list[PaymentRecordResponse]
    total: int
    page: int
    page_size: int
    pages: int


# ============================================================================
# Withdrawals and balances
# ============================================================================


class WithdrawRequest(ApiModel):
    """Withdrawal request.

    ``amount`` is validated by the engine so a non-positive value yields the
    standard INVALID_AMOUNT error envelope.
    """

    amount: int
    provider: str
    currency: str | None = None


class WithdrawalResponse(ApiModel):
    withdrawal_id: UUID
    status: str
    amount: int
    currency: str
    external_ref: str | None = None
    available_after: int
    error_code: str | None = None


class BalanceResponse(ApiModel):
    user_id: str
    provider: str
    currency: str
    earned: int
    withdrawn: int
    withdrawing: int
    pending: int
    available: int


class BalanceListResponse(ApiModel):
    items: list[BalanceResponse]


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(ApiModel):
    received: bool = True
    duplicate: bool = False


class HealthResponse(ApiModel):
    status: str
    timestamp: datetime
    database: str
    providers: dict[str, Any] = Field(default_factory=dict)
