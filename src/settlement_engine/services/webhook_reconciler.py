"""Webhook reconciliation.

Provider notifications arrive asynchronously, possibly duplicated and out
of order. The reconciler:

1. Verifies authenticity: HMAC-SHA256 of ``f"{timestamp}.{raw_body}"`` with
   the provider's webhook secret, constant-time compared, timestamp within
   the tolerance window. Rejections are logged on the security logger and
   never reach the engine.
2. Durably queues the parsed event in the ``webhook_event`` inbox. The
   (provider, event id) unique key makes redelivery a no-op.
3. Dispatches queued events into the settlement engine by event kind.
   Record-level idempotency (``last_processed_event_id``) and forward-only
   transitions make replays and reorderings converge.
"""

from __future__ import annotations

import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, NoReturn
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.database import session_scope
from settlement_engine.errors import (
    NotFoundError,
    ProviderPermanentError,
    SettlementError,
    ValidationError,
    WebhookSignatureError,
)
from settlement_engine.events import EventEmitter, EventMetadata, WebhookRejected
from settlement_engine.logging_config import get_security_logger
from settlement_engine.models import WebhookEvent
from settlement_engine.models.base import utcnow
from settlement_engine.providers.base import (
    EventKind,
    PaymentProvider,
    PayoutStatus,
    ProviderEvent,
    compute_signature,
)
from settlement_engine.providers.registry import ProviderRegistry
from settlement_engine.services.settlement import SettlementEngine
from settlement_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)
security_logger = get_security_logger()

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class ReceiveResult:
    """Outcome of accepting a webhook delivery into the inbox."""

    inbox_id: UUID
    event_id: str
    kind: EventKind
    duplicate: bool

    @property
    def status(self) -> str:
        return "duplicate" if self.duplicate else "received"


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of dispatching one inbox event."""

    inbox_id: UUID
    status: str  # processed | ignored | failed
    error: str | None = None


@dataclass
class ReconciliationResult:
    """Result of draining the inbox."""

    events_processed: int = 0
    events_ignored: int = 0
    events_failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether every event was applied or deliberately ignored."""
        return self.events_failed == 0


class WebhookReconciler:
    """Verifies, queues and applies provider webhook events."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        engine: SettlementEngine,
        providers: ProviderRegistry,
        secrets: Mapping[str, str],
        *,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
        emitter: EventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.providers = providers
        self.secrets = dict(secrets)
        self.tolerance_seconds = tolerance_seconds
        self.max_attempts = max_attempts
        self._clock = clock
        self.emitter = emitter or engine.emitter

        self._dispatch: dict[EventKind, Callable[[ProviderEvent], Any]] = {
            EventKind.PAYMENT_PROCESSING: self._payment_status(PaymentStatus.PROCESSING),
            EventKind.PAYMENT_REQUIRES_CAPTURE: self._payment_status(
                PaymentStatus.REQUIRES_CAPTURE
            ),
            EventKind.PAYMENT_SUCCEEDED: self._payment_succeeded,
            EventKind.PAYMENT_FAILED: self._payment_status(PaymentStatus.FAILED),
            EventKind.PAYMENT_CANCELED: self._payment_status(PaymentStatus.CANCELED),
            EventKind.REFUND_COMPLETED: self._refund_completed,
            EventKind.PAYOUT_PAID: self._payout_status(PayoutStatus.SUCCEEDED),
            EventKind.PAYOUT_FAILED: self._payout_status(PayoutStatus.FAILED),
            EventKind.ACCOUNT_INVALIDATED: self._account_invalidated,
        }

    # ------------------------------------------------------------------
    # Authenticity
    # ------------------------------------------------------------------

    def verify(
        self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> PaymentProvider:
        """Check signature and freshness of a delivery.

        Raises:
            WebhookSignatureError: Missing/malformed headers, stale timestamp
                or signature mismatch.
        """
        provider = self.providers.get(provider_name)
        name = provider.provider_name

        secret = self.secrets.get(name)
        if not secret:
            self._reject(name, "webhook secret not configured")

        try:
            timestamp, signatures = provider.signature_from_headers(headers)
        except WebhookSignatureError as exc:
            self._reject(name, exc.message)

        try:
            sent_at = int(timestamp)
        except ValueError:
            self._reject(name, "malformed timestamp")

        if abs(self._clock() - sent_at) > self.tolerance_seconds:
            self._reject(name, "timestamp outside tolerance")

        expected = compute_signature(secret, timestamp, raw_body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            self._reject(name, "signature mismatch")

        return provider

    def _reject(self, provider_name: str, reason: str) -> NoReturn:
        security_logger.warning("Rejected %s webhook: %s", provider_name, reason)
        self.emitter.emit(
            WebhookRejected(
                metadata=EventMetadata.create(actor_type="webhook"),
                provider=provider_name,
                reason=reason,
            )
        )
        raise WebhookSignatureError(f"Invalid webhook: {reason}")

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def receive(
        self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> ReceiveResult:
        """Verify a delivery and store it in the inbox."""
        provider = self.verify(provider_name, raw_body, headers)
        try:
            event = provider.parse_event(raw_body)
        except ProviderPermanentError as exc:
            raise ValidationError(exc.message, code="MALFORMED_EVENT") from exc

        try:
            with session_scope(self.session_factory) as session:
                existing = self._find(session, event.provider, event.event_id)
                if existing is not None:
                    return self._duplicate(existing, event)
                row = WebhookEvent(
                    provider=event.provider,
                    external_event_id=event.event_id,
                    kind=event.kind.value,
                    event_type=event.raw_type,
                    external_ref=event.external_ref,
                    payment_ref=event.payment_ref,
                    account_ref=event.account_ref,
                    payload=event.payload,
                    status="received",
                )
                session.add(row)
                session.flush()
                inbox_id = row.id
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            with session_scope(self.session_factory) as session:
                existing = self._find(session, event.provider, event.event_id)
                if existing is None:
                    raise
                return self._duplicate(existing, event)

        logger.info(
            "Queued %s event %s (%s) as %s", event.provider, event.event_id, event.raw_type, inbox_id
        )
        return ReceiveResult(inbox_id=inbox_id, event_id=event.event_id, kind=event.kind, duplicate=False)

    @staticmethod
    def _find(session: Session, provider: str, event_id: str) -> WebhookEvent | None:
        return session.scalars(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.external_event_id == event_id,
            )
        ).first()

    @staticmethod
    def _duplicate(existing: WebhookEvent, event: ProviderEvent) -> ReceiveResult:
        logger.info("Duplicate %s event %s acknowledged", event.provider, event.event_id)
        return ReceiveResult(
            inbox_id=existing.id, event_id=event.event_id, kind=event.kind, duplicate=True
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def process(self, inbox_id: UUID) -> ProcessResult:
        """Apply one queued event to the engine."""
        with session_scope(self.session_factory) as session:
            row = session.get(WebhookEvent, inbox_id)
            if row is None:
                raise NotFoundError("Webhook event not found")
            if row.status in ("processed", "ignored"):
                return ProcessResult(inbox_id=inbox_id, status=row.status)
            event = ProviderEvent(
                provider=row.provider,
                event_id=row.external_event_id,
                kind=EventKind(row.kind),
                raw_type=row.event_type,
                external_ref=row.external_ref,
                payment_ref=row.payment_ref,
                account_ref=row.account_ref,
                payload=row.payload or {},
            )

        handler = self._dispatch.get(event.kind)
        if handler is None:
            logger.info("Ignoring unhandled %s event type %s", event.provider, event.raw_type)
            return self._finish(inbox_id, "ignored", f"unhandled event type {event.raw_type}")
        if not _references_record(event):
            logger.info("Ignoring %s event %s without a reference", event.provider, event.event_id)
            return self._finish(inbox_id, "ignored", "event carries no reference")

        try:
            handler(event)
        except NotFoundError as exc:
            # The local write that stores the reference may not have committed yet
            logger.info(
                "No record yet for %s event %s (%s); will retry",
                event.provider,
                event.event_id,
                event.external_ref or event.payment_ref,
            )
            return self._finish(inbox_id, "failed", f"{exc.code}: {exc.message}")
        except SettlementError as exc:
            logger.warning(
                "Failed to apply %s event %s: %s", event.provider, event.event_id, exc.code
            )
            return self._finish(inbox_id, "failed", f"{exc.code}: {exc.message}")
        except Exception as exc:
            logger.exception("Unexpected error applying %s event %s", event.provider, event.event_id)
            self._finish(inbox_id, "failed", type(exc).__name__)
            raise

        return self._finish(inbox_id, "processed")

    def handle(
        self, provider_name: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> ProcessResult:
        """Receive and immediately process a delivery."""
        received = self.receive(provider_name, raw_body, headers)
        return self.process(received.inbox_id)

    def process_pending(self, limit: int = 100) -> ReconciliationResult:
        """Process received and retryable failed events, oldest first."""
        with session_scope(self.session_factory) as session:
            ids = list(
                session.scalars(
                    select(WebhookEvent.id)
                    .where(
                        WebhookEvent.status.in_(("received", "failed")),
                        WebhookEvent.attempts < self.max_attempts,
                    )
                    .order_by(WebhookEvent.received_at, WebhookEvent.id)
                    .limit(limit)
                )
            )

        result = ReconciliationResult()
        for inbox_id in ids:
            try:
                outcome = self.process(inbox_id)
            except Exception as exc:
                result.events_failed += 1
                result.errors.append({"inbox_id": str(inbox_id), "error": type(exc).__name__})
                continue
            if outcome.status == "processed":
                result.events_processed += 1
            elif outcome.status == "ignored":
                result.events_ignored += 1
            else:
                result.events_failed += 1
                result.errors.append({"inbox_id": str(inbox_id), "error": outcome.error})
        if ids:
            logger.info(
                "Inbox drained: %d processed, %d ignored, %d failed",
                result.events_processed,
                result.events_ignored,
                result.events_failed,
            )
        return result

    def _finish(self, inbox_id: UUID, status: str, error: str | None = None) -> ProcessResult:
        with session_scope(self.session_factory) as session:
            row = session.get(WebhookEvent, inbox_id)
            if row is not None:
                row.status = status
                row.attempts = (row.attempts or 0) + 1
                row.last_error = error
                if status in ("processed", "ignored"):
                    row.processed_at = utcnow()
        return ProcessResult(inbox_id=inbox_id, status=status, error=error)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _payment_status(self, target: PaymentStatus) -> Callable[[ProviderEvent], Any]:
        def apply(event: ProviderEvent) -> Any:
            return self.engine.advance(
                event.external_ref, target, event_id=event.event_id, payment_ref=event.payment_ref
            )

        return apply

    def _payment_succeeded(self, event: ProviderEvent) -> Any:
        # Signed by the provider, so no confirmation round trip is needed
        return self.engine.confirm(
            event.external_ref,
            event_id=event.event_id,
            verified=True,
            payment_ref=event.payment_ref,
        )

    def _refund_completed(self, event: ProviderEvent) -> Any:
        return self.engine.complete_refund(
            event.external_ref, event_id=event.event_id, payment_ref=event.payment_ref
        )

    def _payout_status(self, status: PayoutStatus) -> Callable[[ProviderEvent], Any]:
        def apply(event: ProviderEvent) -> Any:
            return self.engine.apply_payout_status(
                event.external_ref, status, event_id=event.event_id
            )

        return apply

    def _account_invalidated(self, event: ProviderEvent) -> Any:
        return self.engine.handle_account_status(event.provider, event.account_ref)


_PAYOUT_KINDS = {EventKind.PAYOUT_PAID, EventKind.PAYOUT_FAILED}


def _references_record(event: ProviderEvent) -> bool:
    """Whether the event names something the engine could look up."""
    if event.kind == EventKind.ACCOUNT_INVALIDATED:
        return bool(event.account_ref)
    if event.kind in _PAYOUT_KINDS:
        return bool(event.external_ref)
    return bool(event.external_ref or event.payment_ref)
