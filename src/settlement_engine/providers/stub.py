"""In-memory stub provider for local development and testing.

Behaves like a provider with asynchronous settlement: charges stay pending
until a simulation hook (or a signed webhook built with ``build_webhook``)
settles them.
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Any, Mapping

from settlement_engine.errors import (
    AccountInvalidError,
    InsufficientProviderFundsError,
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
    compute_signature,
    lower_headers,
)

SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-timestamp"


class StubProvider:
    """Stub payment provider.

    In production this is replaced by StripeProvider or NuveiProvider. The
    stub records every call so tests can assert on what the engine sent.
    """

    def __init__(
        self,
        provider_name: str = "stripe",
        *,
        auto_settle_payouts: bool = True,
        auto_complete_refunds: bool = False,
        platform_balance: int | None = None,
    ):
        """Initialize stub provider.

        Args:
            provider_name: Name the stub answers to (stripe or nuvei).
            auto_settle_payouts: If True, payouts report succeeded immediately,
                otherwise they stay processing until settled.
            auto_complete_refunds: If True, refunds report completed immediately.
            platform_balance: Optional platform balance; payouts beyond it fail
                with InsufficientProviderFundsError.
        """
        self.provider_name = provider_name
        self.auto_settle_payouts = auto_settle_payouts
        self.auto_complete_refunds = auto_complete_refunds
        self.platform_balance = platform_balance
        self.closed = False
        self.calls: list[tuple[str, Any]] = []
        self._lock = threading.Lock()
        self._charges: dict[str, dict[str, Any]] = {}
        self._refunds: dict[str, RefundResult] = {}
        self._payouts: dict[str, dict[str, Any]] = {}
        self._invalid_accounts: set[str] = set()
        self._outage_calls = 0

    # ------------------------------------------------------------------
    # PaymentProvider protocol
    # ------------------------------------------------------------------

    def open_charge(self, request: ChargeRequest) -> ChargeResult:
        self._record("open_charge", request)
        ref = f"{self.provider_name}_pi_{uuid.uuid4().hex[:16]}"
        with self._lock:
            self._charges[ref] = {
                "request": request,
                "status": ChargeStatus.PENDING,
                "captured": False,
            }
        return ChargeResult(
            external_ref=ref,
            status=ChargeStatus.PENDING,
            client_secret=f"{ref}_secret",
            session_id=f"{self.provider_name}_sess_{ref[-8:]}",
        )

    def confirm(self, external_ref: str) -> ChargeStatus:
        self._record("confirm", external_ref)
        return self._charge(external_ref)["status"]

    def capture(self, external_ref: str) -> None:
        self._record("capture", external_ref)
        with self._lock:
            charge = self._charge(external_ref)
            if charge["status"] != ChargeStatus.REQUIRES_CAPTURE:
                raise ProviderPermanentError(
                    "Charge cannot be captured in its current state",
                    code="CAPTURE_NOT_ALLOWED",
                )
            charge["status"] = ChargeStatus.SUCCEEDED
            charge["captured"] = True

    def refund(self, external_ref: str, idempotency_key: str) -> RefundResult:
        self._record("refund", (external_ref, idempotency_key))
        with self._lock:
            if idempotency_key in self._refunds:
                return self._refunds[idempotency_key]
            self._charge(external_ref)
            result = RefundResult(
                refund_ref=f"{self.provider_name}_re_{uuid.uuid4().hex[:16]}",
                completed=self.auto_complete_refunds,
            )
            self._refunds[idempotency_key] = result
            return result

    def payout(
        self, account_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> PayoutResult:
        self._record("payout", (account_ref, amount, currency, idempotency_key))
        with self._lock:
            existing = self._payouts.get(idempotency_key)
            if existing is not None:
                return PayoutResult(existing["ref"], existing["status"])
            if account_ref in self._invalid_accounts:
                raise AccountInvalidError("Connected account is no longer valid")
            if self.platform_balance is not None:
                if amount > self.platform_balance:
                    raise InsufficientProviderFundsError("Platform balance too low for payout")
                self.platform_balance -= amount
            status = PayoutStatus.SUCCEEDED if self.auto_settle_payouts else PayoutStatus.PROCESSING
            ref = f"{self.provider_name}_po_{uuid.uuid4().hex[:16]}"
            self._payouts[idempotency_key] = {
                "ref": ref,
                "account_ref": account_ref,
                "amount": amount,
                "currency": currency,
                "status": status,
            }
            return PayoutResult(ref, status)

    def verify_account(self, account_ref: str) -> AccountStatus:
        self._record("verify_account", account_ref)
        if account_ref in self._invalid_accounts:
            return AccountStatus.INVALID
        return AccountStatus.OK

    def signature_from_headers(self, headers: Mapping[str, str]) -> tuple[str, tuple[str, ...]]:
        h = lower_headers(headers)
        timestamp = h.get(TIMESTAMP_HEADER)
        signature = h.get(SIGNATURE_HEADER)
        if not timestamp or not signature:
            raise WebhookSignatureError("Missing webhook signature headers")
        return timestamp, (signature,)

    def parse_event(self, raw_body: bytes) -> ProviderEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ProviderPermanentError("Malformed webhook body", code="MALFORMED_EVENT") from exc
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ProviderPermanentError("Webhook event has no id", code="MALFORMED_EVENT")

        raw_type = str(payload.get("type", ""))
        try:
            kind = EventKind(raw_type)
        except ValueError:
            kind = EventKind.UNKNOWN
        data = payload.get("data") or {}
        return ProviderEvent(
            provider=self.provider_name,
            event_id=str(payload["id"]),
            kind=kind,
            raw_type=raw_type,
            external_ref=data.get("ref"),
            payment_ref=data.get("payment_id"),
            account_ref=data.get("account"),
            payload=payload,
        )

    def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Simulation hooks
    # ------------------------------------------------------------------

    def simulate_settle(self, external_ref: str) -> None:
        """Simulate the payer completing payment."""
        self._set_charge_status(external_ref, ChargeStatus.SUCCEEDED)

    def simulate_authorize(self, external_ref: str) -> None:
        """Simulate an authorized charge awaiting manual capture."""
        self._set_charge_status(external_ref, ChargeStatus.REQUIRES_CAPTURE)

    def simulate_fail(self, external_ref: str) -> None:
        """Simulate a declined charge."""
        self._set_charge_status(external_ref, ChargeStatus.FAILED)

    def simulate_payout_status(self, payout_ref: str, status: PayoutStatus) -> None:
        """Simulate the provider settling or failing a payout."""
        with self._lock:
            for payout in self._payouts.values():
                if payout["ref"] == payout_ref:
                    payout["status"] = status
                    return
        raise KeyError(payout_ref)

    def invalidate_account(self, account_ref: str) -> None:
        """Simulate a connected account being deauthorized."""
        with self._lock:
            self._invalid_accounts.add(account_ref)

    def simulate_outage(self, calls: int = 1) -> None:
        """Make the next ``calls`` provider calls fail with a transient error."""
        with self._lock:
            self._outage_calls = calls

    def build_webhook(
        self,
        secret: str,
        event_type: str,
        *,
        ref: str | None = None,
        account: str | None = None,
        payment_id: str | None = None,
        event_id: str | None = None,
        timestamp: int | None = None,
    ) -> tuple[bytes, dict[str, str]]:
        """Build a signed webhook delivery as this stub would send it."""
        payload = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "type": event_type,
            "data": {"ref": ref, "account": account, "payment_id": payment_id},
        }
        body = json.dumps(payload).encode("utf-8")
        ts = str(timestamp if timestamp is not None else int(time.time()))
        return body, {
            TIMESTAMP_HEADER: ts,
            SIGNATURE_HEADER: compute_signature(secret, ts, body),
        }

    def payouts(self) -> list[dict[str, Any]]:
        """All payouts issued so far."""
        with self._lock:
            return [dict(p) for p in self._payouts.values()]

    # ------------------------------------------------------------------

    def _record(self, name: str, args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
            if self._outage_calls > 0:
                self._outage_calls -= 1
                raise ProviderTransientError("Stub provider unavailable")

    def _charge(self, external_ref: str) -> dict[str, Any]:
        charge = self._charges.get(external_ref)
        if charge is None:
            raise ProviderPermanentError("Unknown charge reference", code="UNKNOWN_REFERENCE")
        return charge

    def _set_charge_status(self, external_ref: str, status: ChargeStatus) -> None:
        with self._lock:
            self._charge(external_ref)["status"] = status
