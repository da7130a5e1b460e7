"""Nuvei adapter.

Talks to the Nuvei REST API over an injected ``httpx.Client``. Requests that
Nuvei authenticates by checksum carry ``checksum = sha256(merchantId +
merchantSiteId + clientRequestId + amount + currency + timeStamp + secret)``.
Amounts are sent in major units.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

import httpx

from settlement_engine.config import NuveiSettings
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

SIGNATURE_HEADER = "x-nuvei-signature"
TIMESTAMP_HEADER = "x-nuvei-timestamp"

_TRANSACTION_STATUS = {
    "APPROVED": ChargeStatus.SUCCEEDED,
    "SUCCESS": ChargeStatus.SUCCEEDED,
    "PENDING": ChargeStatus.PENDING,
    "REDIRECT": ChargeStatus.PENDING,
    "DECLINED": ChargeStatus.FAILED,
    "ERROR": ChargeStatus.FAILED,
}

_PAYOUT_STATUS = {
    "APPROVED": PayoutStatus.SUCCEEDED,
    "SUCCESS": PayoutStatus.SUCCEEDED,
    "PENDING": PayoutStatus.PROCESSING,
    "DECLINED": PayoutStatus.FAILED,
    "ERROR": PayoutStatus.FAILED,
}

_EVENT_KINDS = {
    "payment_success": EventKind.PAYMENT_SUCCEEDED,
    "payment.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_pending": EventKind.PAYMENT_PROCESSING,
    "payment.pending": EventKind.PAYMENT_PROCESSING,
    "payment_failed": EventKind.PAYMENT_FAILED,
    "payment.failed": EventKind.PAYMENT_FAILED,
    "payment.canceled": EventKind.PAYMENT_CANCELED,
    "refund_completed": EventKind.REFUND_COMPLETED,
    "refund.completed": EventKind.REFUND_COMPLETED,
    "bank_transfer_completed": EventKind.PAYOUT_PAID,
    "payout.completed": EventKind.PAYOUT_PAID,
    "bank_transfer_failed": EventKind.PAYOUT_FAILED,
    "payout.failed": EventKind.PAYOUT_FAILED,
    "account.disabled": EventKind.ACCOUNT_INVALIDATED,
}

_ERROR_CODES: dict[str, type[ProviderError]] = {
    "ACCOUNT_INVALID": AccountInvalidError,
    "ACCOUNT_NOT_FOUND": AccountInvalidError,
    "INSUFFICIENT_FUNDS": InsufficientProviderFundsError,
    "PAYOUT_NOT_ALLOWED": PayoutNotAllowedError,
}


def to_major_units(amount: int) -> str:
    """Format minor units as a two-decimal major-unit string (1234 -> "12.34")."""
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


def nuvei_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")


class NuveiProvider:
    """PaymentProvider implementation for Nuvei."""

    provider_name = "nuvei"

    def __init__(
        self,
        settings: NuveiSettings,
        client: httpx.Client | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self.client = client or httpx.Client(base_url=settings.api_url, timeout=30.0)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def checksum(self, *parts: str) -> str:
        """SHA-256 checksum over the given fields followed by the secret key."""
        joined = "".join(parts) + self.settings.secret_key
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()

    def open_charge(self, request: ChargeRequest) -> ChargeResult:
        amount = to_major_units(request.amount)
        currency = request.currency.upper()
        timestamp = nuvei_timestamp(self._clock())
        client_request_id = request.idempotency_key or request.payment_id
        order_id = f"SETTLE-{request.payment_id}"

        body = self._post(
            "payment/session/create",
            {
                "merchantId": self.settings.merchant_id,
                "merchantSiteId": self.settings.merchant_site_id,
                "clientRequestId": client_request_id,
                "clientUniqueId": request.payment_id,
                "amount": amount,
                "currency": currency,
                "orderId": order_id,
                "userTokenId": request.payer_account_ref,
                "transactionType": "Auth" if request.capture_manually else "Sale",
                "timeStamp": timestamp,
                "checksum": self.checksum(
                    self.settings.merchant_id,
                    self.settings.merchant_site_id,
                    client_request_id,
                    amount,
                    currency,
                    timestamp,
                ),
            },
        )

        session_id = body.get("sessionId") or body.get("sessionToken")
        external_ref = body.get("transactionId") or session_id
        if not external_ref:
            raise ProviderPermanentError(
                "Nuvei did not return a session", code="MALFORMED_RESPONSE"
            )
        logger.info("Nuvei session %s opened for payment %s", session_id, request.payment_id)
        return ChargeResult(
            external_ref=str(external_ref),
            status=ChargeStatus.PENDING,
            session_id=session_id,
            extra_refs={"order_id": order_id},
        )

    def confirm(self, external_ref: str) -> ChargeStatus:
        timestamp = nuvei_timestamp(self._clock())
        body = self._post(
            "ppro/getPaymentStatus.do",
            {
                "merchantId": self.settings.merchant_id,
                "merchantSiteId": self.settings.merchant_site_id,
                "transactionId": external_ref,
                "timeStamp": timestamp,
                "checksum": self.checksum(
                    self.settings.merchant_id,
                    self.settings.merchant_site_id,
                    external_ref,
                    timestamp,
                ),
            },
        )
        status = str(body.get("transactionStatus") or body.get("status") or "").upper()
        if status == "APPROVED" and body.get("transactionType") == "Auth":
            return ChargeStatus.REQUIRES_CAPTURE
        return _TRANSACTION_STATUS.get(status, ChargeStatus.PENDING)

    def capture(self, external_ref: str) -> None:
        self._transaction_call("settleTransaction.do", external_ref, f"settle-{external_ref}")

    def refund(self, external_ref: str, idempotency_key: str) -> RefundResult:
        body = self._transaction_call("refundTransaction.do", external_ref, idempotency_key)
        status = str(body.get("transactionStatus") or "").upper()
        return RefundResult(
            refund_ref=str(body.get("transactionId") or idempotency_key),
            completed=status == "APPROVED",
        )

    def payout(
        self, account_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> PayoutResult:
        major = to_major_units(amount)
        cur = currency.upper()
        timestamp = nuvei_timestamp(self._clock())
        body = self._post(
            "ppro/payout/bank-transfer.do",
            {
                "merchantId": self.settings.merchant_id,
                "merchantSiteId": self.settings.merchant_site_id,
                "clientRequestId": idempotency_key,
                "userTokenId": account_ref,
                "userPaymentOptionId": account_ref,
                "amount": major,
                "currency": cur,
                "transactionType": "bank_transfer",
                "timeStamp": timestamp,
                "checksum": self.checksum(
                    self.settings.merchant_id,
                    self.settings.merchant_site_id,
                    idempotency_key,
                    major,
                    cur,
                    timestamp,
                ),
            },
        )
        ref = body.get("transactionId") or body.get("transferId")
        if not ref:
            raise ProviderPermanentError(
                "Nuvei did not return a payout reference", code="MALFORMED_RESPONSE"
            )
        status = str(body.get("transactionStatus") or "PENDING").upper()
        return PayoutResult(
            external_ref=str(ref),
            status=_PAYOUT_STATUS.get(status, PayoutStatus.PROCESSING),
        )

    def verify_account(self, account_ref: str) -> AccountStatus:
        try:
            response = self.client.get(f"accounts/{account_ref}")
        except httpx.TransportError as exc:
            raise ProviderTransientError("Nuvei is temporarily unavailable") from exc
        if response.status_code == 404:
            return AccountStatus.INVALID
        body = self._checked(response)
        if str(body.get("status", "")).lower() in ("disabled", "closed", "invalid"):
            return AccountStatus.INVALID
        return AccountStatus.OK

    def signature_from_headers(self, headers: Mapping[str, str]) -> tuple[str, tuple[str, ...]]:
        h = lower_headers(headers)
        timestamp = h.get(TIMESTAMP_HEADER)
        signature = h.get(SIGNATURE_HEADER)
        if not timestamp or not signature:
            raise WebhookSignatureError("Webhook signature or timestamp missing")
        return timestamp, (signature,)

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ProviderPermanentError(
                "Malformed Nuvei event body", code="MALFORMED_EVENT"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderPermanentError("Malformed Nuvei event body", code="MALFORMED_EVENT")

        event_id = payload.get("eventId") or payload.get("id")
        if not event_id:
            raise ProviderPermanentError("Nuvei event has no id", code="MALFORMED_EVENT")
        raw_type = str(payload.get("type") or payload.get("event_type") or "unknown")
        ref = payload.get("transactionId") or payload.get("txnId")
        kind = _EVENT_KINDS.get(raw_type, EventKind.UNKNOWN)

        return ProviderEvent(
            provider=self.provider_name,
            event_id=str(event_id),
            kind=kind,
            raw_type=raw_type,
            external_ref=str(ref) if ref and kind != EventKind.ACCOUNT_INVALIDATED else None,
            payment_ref=payload.get("clientUniqueId"),
            account_ref=payload.get("accountId") or payload.get("userTokenId"),
            payload=payload,
        )

    def close(self) -> None:
        self.client.close()

    def _transaction_call(
        self, endpoint: str, related_transaction_id: str, client_request_id: str
    ) -> dict[str, Any]:
        timestamp = nuvei_timestamp(self._clock())
        return self._post(
            endpoint,
            {
                "merchantId": self.settings.merchant_id,
                "merchantSiteId": self.settings.merchant_site_id,
                "clientRequestId": client_request_id,
                "relatedTransactionId": related_transaction_id,
                "timeStamp": timestamp,
                "checksum": self.checksum(
                    self.settings.merchant_id,
                    self.settings.merchant_site_id,
                    client_request_id,
                    related_transaction_id,
                    timestamp,
                ),
            },
        )

    def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.post(endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError("Nuvei request timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError("Nuvei is temporarily unavailable") from exc
        return self._checked(response)

    def _checked(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Nuvei returned HTTP %d", response.status_code)
            raise ProviderTransientError("Nuvei is temporarily unavailable")
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderPermanentError(
                "Nuvei returned a malformed response", code="MALFORMED_RESPONSE"
            ) from exc
        if not isinstance(body, dict):
            raise ProviderPermanentError(
                "Nuvei returned a malformed response", code="MALFORMED_RESPONSE"
            )

        failed = response.status_code >= 400 or str(body.get("status", "")).upper() == "ERROR"
        if failed:
            err_code = str(body.get("errCode") or body.get("errorCode") or "").upper()
            error_cls = _ERROR_CODES.get(err_code, ProviderPermanentError)
            logger.warning(
                "Nuvei rejected request: HTTP %d, errCode=%s", response.status_code, err_code or "-"
            )
            if error_cls is ProviderPermanentError:
                raise ProviderPermanentError("Nuvei rejected the request")
            raise error_cls("Nuvei rejected the request")
        return body
