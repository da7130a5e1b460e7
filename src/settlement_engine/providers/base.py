"""Base protocol and types for payment provider adapters.

All provider adapters must implement the PaymentProvider protocol. The
settlement engine only ever sees the normalized types declared here; raw
provider payloads stay inside the adapter.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol


class Provider(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    NUVEI = "nuvei"


class ChargeStatus(str, Enum):
    """Normalized charge status reported by a provider."""

    SUCCEEDED = "succeeded"
    REQUIRES_CAPTURE = "requires_capture"
    PENDING = "pending"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    """Normalized payout status reported by a provider."""

    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"


class AccountStatus(str, Enum):
    OK = "ok"
    INVALID = "invalid"


class EventKind(str, Enum):
    """Normalized webhook event kinds."""

    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_REQUIRES_CAPTURE = "payment_requires_capture"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    REFUND_COMPLETED = "refund_completed"
    PAYOUT_PAID = "payout_paid"
    PAYOUT_FAILED = "payout_failed"
    ACCOUNT_INVALIDATED = "account_invalidated"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ChargeRequest:
    """Everything an adapter needs to open a charge for one payment record."""

    payment_id: str
    contract_ref: str
    amount: int  # total charged to the payer, minor units
    platform_amount: int  # fee + tax retained by the platform
    service_amount: int
    currency: str
    payer_account_ref: str
    payee_account_ref: str
    description: str = ""
    capture_manually: bool = False
    idempotency_key: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeResult:
    """Result of opening a charge."""

    external_ref: str
    status: ChargeStatus = ChargeStatus.PENDING
    client_secret: str | None = None
    session_id: str | None = None
    extra_refs: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request."""

    refund_ref: str
    completed: bool


@dataclass(frozen=True)
class PayoutResult:
    """Result of a payout request."""

    external_ref: str
    status: PayoutStatus


@dataclass(frozen=True)
class ProviderEvent:
    """A provider webhook event, normalized.

    ``external_ref`` is the provider id of the payment (or payout) the event is
    about; ``payment_ref`` is our own record id when the provider echoes it
    back; ``account_ref`` is set for account events.
    """

    provider: str
    event_id: str
    kind: EventKind
    raw_type: str
    external_ref: str | None = None
    payment_ref: str | None = None
    account_ref: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """Protocol for payment provider adapters.

    Each provider has its own adapter implementing this protocol. The
    settlement engine uses these adapters without knowing provider details.
    Adapters raise only the normalized errors from settlement_engine.errors.
    """

    provider_name: str

    def open_charge(self, request: ChargeRequest) -> ChargeResult:
        """Open a charge (payment intent / payment session) for a payment record.

        Returns:
            ChargeResult with the provider reference and the client secret or
            session id the payer's client needs to complete payment.
        """
        ...

    def confirm(self, external_ref: str) -> ChargeStatus:
        """Ask the provider for the authoritative status of a charge."""
        ...

    def capture(self, external_ref: str) -> None:
        """Capture a previously authorized charge (escrow release)."""
        ...

    def refund(self, external_ref: str, idempotency_key: str) -> RefundResult:
        """Return the charge to the payer.

        Returns:
            RefundResult; ``completed`` is False while the provider still
            settles the refund asynchronously.
        """
        ...

    def payout(
        self, account_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> PayoutResult:
        """Transfer an amount from the platform to a user's connected account."""
        ...

    def verify_account(self, account_ref: str) -> AccountStatus:
        """Check that a connected account can still receive funds."""
        ...

    def signature_from_headers(self, headers: Mapping[str, str]) -> tuple[str, tuple[str, ...]]:
        """Extract the timestamp and candidate signatures from webhook headers.

        A delivery is authentic when any candidate matches; providers send
        several while a webhook secret is being rotated.

        Raises:
            WebhookSignatureError: If the headers are missing or malformed.
        """
        ...

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        """Parse an authenticated webhook body into a normalized event."""
        ...

    def close(self) -> None:
        """Release network resources."""
        ...


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Case-insensitive view of a header mapping."""
    return {str(k).lower(): str(v) for k, v in headers.items()}


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``f"{timestamp}.{raw_body}"``."""
    signed = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
