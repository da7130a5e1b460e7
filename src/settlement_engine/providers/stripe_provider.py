"""Stripe adapter.

Payments are destination charges: the payer is charged the full amount and
the service amount is transferred to the payee's connected account, with fee
plus tax kept back as ``application_fee_amount``. Escrow uses manual capture.
Payouts are issued on the connected account.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

import stripe

from settlement_engine.errors import (
    AccountInvalidError,
    InsufficientProviderFundsError,
    PayoutNotAllowedError,
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
    WebhookSignatureError,
)
from settlement_engine.providers.base import (
    AccountStatus,
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    EventKind,
    PayoutResult,
    PayoutStatus,
    ProviderEvent,
    RefundResult,
    lower_headers,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

_INTENT_STATUS = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "requires_capture": ChargeStatus.REQUIRES_CAPTURE,
    "processing": ChargeStatus.PENDING,
    "requires_payment_method": ChargeStatus.PENDING,
    "requires_confirmation": ChargeStatus.PENDING,
    "requires_action": ChargeStatus.PENDING,
    "canceled": ChargeStatus.FAILED,
}

_PAYOUT_STATUS = {
    "paid": PayoutStatus.SUCCEEDED,
    "pending": PayoutStatus.PROCESSING,
    "in_transit": PayoutStatus.PROCESSING,
    "failed": PayoutStatus.FAILED,
    "canceled": PayoutStatus.FAILED,
}

_EVENT_KINDS = {
    "payment_intent.processing": EventKind.PAYMENT_PROCESSING,
    "payment_intent.amount_capturable_updated": EventKind.PAYMENT_REQUIRES_CAPTURE,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_intent.canceled": EventKind.PAYMENT_CANCELED,
    "charge.refunded": EventKind.REFUND_COMPLETED,
    "payout.paid": EventKind.PAYOUT_PAID,
    "payout.failed": EventKind.PAYOUT_FAILED,
    "payout.canceled": EventKind.PAYOUT_FAILED,
    "account.application.deauthorized": EventKind.ACCOUNT_INVALIDATED,
}

# Stripe error codes that mean the connected account is unusable
_ACCOUNT_INVALID_CODES = {
    "account_invalid",
    "account_closed",
    "account_inactive",
    "no_account",
}


def translate_stripe_error(exc: stripe.StripeError) -> ProviderError:
    """Map a Stripe SDK error onto the normalized provider error taxonomy."""
    code = getattr(exc, "code", None) or ""

    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return ProviderTransientError("Stripe is temporarily unavailable")
    if isinstance(exc, stripe.PermissionError) or code in _ACCOUNT_INVALID_CODES:
        return AccountInvalidError("Stripe connected account is invalid")
    if code in ("insufficient_funds", "balance_insufficient"):
        return InsufficientProviderFundsError("Insufficient funds on Stripe balance")
    if code in ("payout_not_allowed", "payouts_not_allowed", "instant_payouts_unsupported"):
        return PayoutNotAllowedError("Payouts are not allowed for this Stripe account")
    if isinstance(exc, stripe.CardError):
        return ProviderPermanentError("Card was declined", code="CARD_DECLINED")
    return ProviderPermanentError("Stripe rejected the request")


class StripeProvider:
    """PaymentProvider implementation backed by the Stripe SDK."""

    provider_name = "stripe"

    def __init__(
        self,
        client: stripe.StripeClient,
        *,
        payout_method: str = "instant",
    ):
        """Initialize the adapter.

        Args:
            client: Configured StripeClient. The adapter never reads global
                ``stripe.api_key`` state.
            payout_method: Stripe payout method (instant or standard).
        """
        self.client = client
        self.payout_method = payout_method

    def open_charge(self, request: ChargeRequest) -> ChargeResult:
        params: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency,
            "application_fee_amount": request.platform_amount,
            "transfer_data": {"destination": request.payee_account_ref},
            "capture_method": "manual" if request.capture_manually else "automatic",
            "description": request.description or f"Payment for contract {request.contract_ref}",
            "metadata": {
                "payment_id": request.payment_id,
                "contract_id": request.contract_ref,
                "service_amount": str(request.service_amount),
                **request.metadata,
            },
        }
        if request.payer_account_ref:
            params["customer"] = request.payer_account_ref

        intent = self._call(
            self.client.payment_intents.create,
            params=params,
            options=self._options(request.idempotency_key),
        )
        logger.info(
            "Stripe payment intent %s created for payment %s", intent.id, request.payment_id
        )
        return ChargeResult(
            external_ref=intent.id,
            status=_INTENT_STATUS.get(intent.status, ChargeStatus.PENDING),
            client_secret=intent.client_secret,
        )

    def confirm(self, external_ref: str) -> ChargeStatus:
        intent = self._call(self.client.payment_intents.retrieve, external_ref)
        return _INTENT_STATUS.get(intent.status, ChargeStatus.PENDING)

    def capture(self, external_ref: str) -> None:
        self._call(
            self.client.payment_intents.capture,
            external_ref,
            options=self._options(f"capture-{external_ref}"),
        )

    def refund(self, external_ref: str, idempotency_key: str) -> RefundResult:
        intent = self._call(self.client.payment_intents.retrieve, external_ref)
        if intent.status == "requires_capture":
            # Uncaptured funds are released by canceling the authorization
            self._call(
                self.client.payment_intents.cancel,
                external_ref,
                options=self._options(idempotency_key),
            )
            return RefundResult(refund_ref=external_ref, completed=True)

        refund = self._call(
            self.client.refunds.create,
            params={
                "payment_intent": external_ref,
                "reverse_transfer": True,
                "refund_application_fee": True,
            },
            options=self._options(idempotency_key),
        )
        return RefundResult(refund_ref=refund.id, completed=refund.status == "succeeded")

    def payout(
        self, account_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> PayoutResult:
        options = self._options(idempotency_key)
        options["stripe_account"] = account_ref
        payout = self._call(
            self.client.payouts.create,
            params={"amount": amount, "currency": currency, "method": self.payout_method},
            options=options,
        )
        return PayoutResult(
            external_ref=payout.id,
            status=_PAYOUT_STATUS.get(payout.status, PayoutStatus.PROCESSING),
        )

    def verify_account(self, account_ref: str) -> AccountStatus:
        try:
            account = self.client.accounts.retrieve(account_ref)
        except stripe.StripeError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return AccountStatus.INVALID
            error = translate_stripe_error(exc)
            if isinstance(error, AccountInvalidError):
                return AccountStatus.INVALID
            raise error from exc
        if getattr(account, "deleted", False):
            return AccountStatus.INVALID
        return AccountStatus.OK

    def signature_from_headers(self, headers: Mapping[str, str]) -> tuple[str, tuple[str, ...]]:
        header = lower_headers(headers).get(SIGNATURE_HEADER, "")
        timestamp: str | None = None
        signatures: list[str] = []
        for item in header.split(","):
            key, sep, value = item.strip().partition("=")
            if not sep:
                continue
            if key == "t" and timestamp is None:
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if timestamp is None or not signatures:
            raise WebhookSignatureError("Missing or malformed Stripe-Signature header")
        return timestamp, tuple(signatures)

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ProviderPermanentError(
                "Malformed Stripe event body", code="MALFORMED_EVENT"
            ) from exc
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ProviderPermanentError("Stripe event has no id", code="MALFORMED_EVENT")

        raw_type = str(payload.get("type", ""))
        obj = (payload.get("data") or {}).get("object") or {}
        kind = _EVENT_KINDS.get(raw_type, EventKind.UNKNOWN)
        external_ref: str | None = obj.get("id")
        account_ref: str | None = payload.get("account")

        if raw_type == "charge.refunded":
            external_ref = obj.get("payment_intent")
        elif raw_type == "account.updated":
            account_ref = obj.get("id") or account_ref
            external_ref = None
            # Pending requirements are normal during onboarding; only a rejection is final
            reason = str((obj.get("requirements") or {}).get("disabled_reason") or "")
            if reason.startswith("rejected."):
                kind = EventKind.ACCOUNT_INVALIDATED
        elif raw_type == "account.application.deauthorized":
            external_ref = None

        return ProviderEvent(
            provider=self.provider_name,
            event_id=str(payload["id"]),
            kind=kind,
            raw_type=raw_type,
            external_ref=external_ref,
            payment_ref=(obj.get("metadata") or {}).get("payment_id"),
            account_ref=account_ref,
            payload=payload,
        )

    def close(self) -> None:
        # StripeClient has no resources to release
        return None

    @staticmethod
    def _options(idempotency_key: str | None) -> dict[str, Any]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    @staticmethod
    def _call(func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as exc:
            error = translate_stripe_error(exc)
            logger.warning(
                "Stripe call %s failed: %s (%s)",
                getattr(func, "__name__", "call"),
                error.code,
                type(exc).__name__,
            )
            raise error from exc
