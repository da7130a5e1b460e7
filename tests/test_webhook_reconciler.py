"""Tests for webhook reconciliation.

Tests verify:
1. Signature and timestamp checks reject forged, tampered and replayed deliveries
2. The inbox deduplicates redelivered events
3. Events are dispatched by kind and unknown kinds are ignored
4. Out-of-order and duplicated events converge on the same final state
"""

import itertools
import logging
import time

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from settlement_engine.database import (
    build_engine,
    build_session_factory,
    create_schema,
    session_scope,
)
from settlement_engine.errors import ConflictError, ValidationError, WebhookSignatureError
from settlement_engine.events import EventCollector, EventEmitter, PaymentSucceeded, WebhookRejected
from settlement_engine.models import WebhookEvent
from settlement_engine.providers import ProviderRegistry, StubProvider
from settlement_engine.services.collaborators import (
    ContractInfo,
    InMemoryAccountDirectory,
    InMemoryContractDirectory,
)
from settlement_engine.services.settlement import SettlementEngine
from settlement_engine.services.webhook_reconciler import WebhookReconciler
from tests.conftest import CONTRACT, PAYEE, PAYER, STRIPE_WEBHOOK_SECRET


def inbox_rows(session_factory) -> list[WebhookEvent]:
    with session_scope(session_factory) as session:
        return list(session.scalars(select(WebhookEvent)))


@pytest.fixture
def charge(engine):
    """An open Stripe charge for the default contract."""
    return engine.initiate(CONTRACT, PAYER, "stripe")


class TestSignatureVerification:
    """Authenticity and freshness."""

    def test_valid_delivery_is_accepted(self, reconciler, stripe_stub, charge, engine):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref
        )

        result = reconciler.handle("stripe", body, headers)

        assert result.status == "processed"
        assert engine.get_record(charge.payment_id).status == "succeeded"

    def test_tampered_body_rejected(self, reconciler, stripe_stub, charge, session_factory):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref
        )
        tampered = body.replace(charge.external_ref.encode(), b"pi_attacker")

        with pytest.raises(WebhookSignatureError) as exc_info:
            reconciler.receive("stripe", tampered, headers)

        assert exc_info.value.http_status == 401
        assert inbox_rows(session_factory) == []

    def test_wrong_secret_rejected(self, reconciler, stripe_stub, charge):
        body, headers = stripe_stub.build_webhook("whsec_wrong", "payment_succeeded")
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, headers)

    def test_stale_timestamp_rejected(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", timestamp=int(time.time()) - 301
        )
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, headers)

    def test_future_timestamp_rejected(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", timestamp=int(time.time()) + 301
        )
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, headers)

    def test_timestamp_within_tolerance_accepted(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", timestamp=int(time.time()) - 250
        )
        assert reconciler.receive("stripe", body, headers).duplicate is False

    def test_missing_headers_rejected(self, reconciler, stripe_stub):
        body, _ = stripe_stub.build_webhook(STRIPE_WEBHOOK_SECRET, "payment_succeeded")
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, {})

    def test_malformed_timestamp_rejected(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(STRIPE_WEBHOOK_SECRET, "payment_succeeded")
        headers["x-timestamp"] = "yesterday"
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, headers)

    def test_unconfigured_secret_rejects_everything(self, session_factory, engine, registry, stripe_stub):
        reconciler = WebhookReconciler(session_factory, engine, registry, {})
        body, headers = stripe_stub.build_webhook("", "payment_succeeded")
        with pytest.raises(WebhookSignatureError):
            reconciler.receive("stripe", body, headers)

    def test_rejection_is_logged_and_published(self, reconciler, stripe_stub, collector, caplog):
        body, headers = stripe_stub.build_webhook("whsec_wrong", "payment_succeeded")

        with caplog.at_level(logging.WARNING, logger="settlement_engine.security"):
            with pytest.raises(WebhookSignatureError):
                reconciler.receive("stripe", body, headers)

        assert "signature mismatch" in caplog.text
        rejected = collector.of_type(WebhookRejected)
        assert rejected[0].provider == "stripe"

    def test_any_matching_signature_is_accepted(self, reconciler, stripe_stub, charge, monkeypatch):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref
        )
        timestamp, (signature,) = stripe_stub.signature_from_headers(headers)
        # Old and new secrets both sign while a secret is being rotated
        monkeypatch.setattr(
            stripe_stub,
            "signature_from_headers",
            lambda _: (timestamp, ("0" * len(signature), signature)),
        )

        assert reconciler.handle("stripe", body, headers).status == "processed"

    def test_unknown_provider(self, reconciler):
        with pytest.raises(ValidationError) as exc_info:
            reconciler.receive("paypal", b"{}", {})
        assert exc_info.value.code == "UNSUPPORTED_PROVIDER"

    def test_signed_garbage_is_malformed(self, reconciler):
        from settlement_engine.providers.base import compute_signature

        ts = str(int(time.time()))
        body = b"not json"
        headers = {
            "X-Timestamp": ts,
            "X-Signature": compute_signature(STRIPE_WEBHOOK_SECRET, ts, body),
        }
        with pytest.raises(ValidationError) as exc_info:
            reconciler.receive("stripe", body, headers)
        assert exc_info.value.code == "MALFORMED_EVENT"


class TestInbox:
    """Durable, deduplicated inbox."""

    def test_redelivery_is_duplicate(self, reconciler, stripe_stub, charge, session_factory, collector):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref, event_id="evt_1"
        )

        first = reconciler.receive("stripe", body, headers)
        second = reconciler.receive("stripe", body, headers)

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.status == "duplicate"
        assert second.inbox_id == first.inbox_id
        assert len(inbox_rows(session_factory)) == 1

        reconciler.process(first.inbox_id)
        reconciler.process(second.inbox_id)
        assert len(collector.of_type(PaymentSucceeded)) == 1

    def test_same_event_id_from_other_provider_is_distinct(self, reconciler, stripe_stub, nuvei_stub):
        from tests.conftest import NUVEI_WEBHOOK_SECRET

        s_body, s_headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_processing", event_id="evt_same"
        )
        n_body, n_headers = nuvei_stub.build_webhook(
            NUVEI_WEBHOOK_SECRET, "payment_processing", event_id="evt_same"
        )

        assert reconciler.receive("stripe", s_body, s_headers).duplicate is False
        assert reconciler.receive("nuvei", n_body, n_headers).duplicate is False

    def test_processed_rows_are_marked(self, reconciler, stripe_stub, charge, session_factory):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref=charge.external_ref
        )
        reconciler.handle("stripe", body, headers)

        (row,) = inbox_rows(session_factory)
        assert row.status == "processed"
        assert row.attempts == 1
        assert row.processed_at is not None
        assert row.external_ref == charge.external_ref

    def test_process_pending_drains_inbox(self, reconciler, stripe_stub, charge, engine):
        for kind in ("payment_processing", "payment_succeeded", "something_else"):
            body, headers = stripe_stub.build_webhook(
                STRIPE_WEBHOOK_SECRET, kind, ref=charge.external_ref
            )
            reconciler.receive("stripe", body, headers)

        result = reconciler.process_pending()

        assert result.events_processed == 2
        assert result.events_ignored == 1
        assert result.success
        assert engine.get_record(charge.payment_id).status == "succeeded"
        assert reconciler.process_pending().events_processed == 0

    def test_failed_event_is_retried(self, reconciler, stripe_stub, charge, engine, monkeypatch, session_factory):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_processing", ref=charge.external_ref
        )
        received = reconciler.receive("stripe", body, headers)

        def busy(*args, **kwargs):
            raise ConflictError("Payment record is being updated concurrently")

        monkeypatch.setattr(engine, "advance", busy)
        outcome = reconciler.process(received.inbox_id)
        assert outcome.status == "failed"
        assert "CONFLICT" in outcome.error

        monkeypatch.undo()
        result = reconciler.process_pending()
        assert result.events_processed == 1
        (row,) = inbox_rows(session_factory)
        assert row.attempts == 2
        assert engine.get_record(charge.payment_id).status == "processing"

    def test_failed_event_gives_up_after_max_attempts(
        self, session_factory, engine, registry, stripe_stub, charge, monkeypatch
    ):
        reconciler = WebhookReconciler(
            session_factory, engine, registry, {"stripe": STRIPE_WEBHOOK_SECRET}, max_attempts=2
        )
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_processing", ref=charge.external_ref
        )
        reconciler.receive("stripe", body, headers)

        def busy(*args, **kwargs):
            raise ConflictError("busy")

        monkeypatch.setattr(engine, "advance", busy)
        assert reconciler.process_pending().events_failed == 1
        assert reconciler.process_pending().events_failed == 1
        assert reconciler.process_pending().events_failed == 0


class TestDispatch:
    """Event kinds routed into the engine."""

    def test_unknown_event_type_ignored(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(STRIPE_WEBHOOK_SECRET, "customer.created")
        assert reconciler.handle("stripe", body, headers).status == "ignored"

    def test_event_for_unknown_payment_is_retryable(self, reconciler, stripe_stub, session_factory):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payment_succeeded", ref="pi_nobody"
        )
        result = reconciler.handle("stripe", body, headers)

        assert result.status == "failed"
        assert "RECORD_NOT_FOUND" in result.error
        assert reconciler.process_pending().events_failed == 1
        (row,) = inbox_rows(session_factory)
        assert row.attempts == 2

    def test_payout_event_before_reference_is_stored(self, reconciler, stripe_stub, pay, engine, monkeypatch):
        stripe_stub.auto_settle_payouts = False
        pay()
        issue = stripe_stub.payout
        early = []

        def payout_with_fast_webhook(account_ref, amount, currency, idempotency_key):
            result = issue(account_ref, amount, currency, idempotency_key)
            body, headers = stripe_stub.build_webhook(
                STRIPE_WEBHOOK_SECRET, "payout_paid", ref=result.external_ref
            )
            early.append(reconciler.handle("stripe", body, headers))
            return result

        monkeypatch.setattr(stripe_stub, "payout", payout_with_fast_webhook)
        withdrawal = engine.withdraw(PAYEE, 2500, "stripe")

        assert early[0].status == "failed"
        assert engine.get_record(withdrawal.withdrawal_id).status == "processing"

        result = reconciler.process_pending()

        assert result.events_processed == 1
        assert engine.get_record(withdrawal.withdrawal_id).status == "succeeded"
        assert engine.balance(PAYEE, "stripe").withdrawn == 2500

    def test_payment_ref_fallback(self, reconciler, stripe_stub, charge, engine):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET,
            "payment_succeeded",
            ref="sess_not_stored",
            payment_id=str(charge.payment_id),
        )
        assert reconciler.handle("stripe", body, headers).status == "processed"
        assert engine.get_record(charge.payment_id).status == "succeeded"

    def test_stale_event_is_acknowledged(self, reconciler, stripe_stub, charge, engine):
        for kind in ("payment_succeeded", "payment_failed"):
            body, headers = stripe_stub.build_webhook(
                STRIPE_WEBHOOK_SECRET, kind, ref=charge.external_ref
            )
            assert reconciler.handle("stripe", body, headers).status == "processed"

        assert engine.get_record(charge.payment_id).status == "succeeded"

    def test_refund_completed(self, reconciler, stripe_stub, pay, engine):
        from settlement_engine.services.settlement import Actor

        paid = pay()
        engine.refund(CONTRACT, Actor(PAYER))
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "refund_completed", ref=paid.external_ref
        )
        reconciler.handle("stripe", body, headers)

        assert engine.get_record(paid.id).status == "refunded"

    def test_payout_paid(self, reconciler, stripe_stub, pay, engine):
        stripe_stub.auto_settle_payouts = False
        pay()
        withdrawal = engine.withdraw(PAYEE, 2500, "stripe")
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payout_paid", ref=withdrawal.external_ref
        )

        assert reconciler.handle("stripe", body, headers).status == "processed"
        assert engine.get_record(withdrawal.withdrawal_id).status == "succeeded"
        assert engine.balance(PAYEE, "stripe").withdrawn == 2500

    def test_payout_failed_restores_balance(self, reconciler, stripe_stub, pay, engine):
        stripe_stub.auto_settle_payouts = False
        pay()
        withdrawal = engine.withdraw(PAYEE, 2500, "stripe")
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "payout_failed", ref=withdrawal.external_ref
        )
        reconciler.handle("stripe", body, headers)

        assert engine.balance(PAYEE, "stripe").available == 10000

    def test_account_invalidated(self, reconciler, stripe_stub, accounts):
        body, headers = stripe_stub.build_webhook(
            STRIPE_WEBHOOK_SECRET, "account_invalidated", account="acct_payee"
        )
        assert reconciler.handle("stripe", body, headers).status == "processed"
        assert accounts.get_provider_account_ref(PAYEE, "stripe") is None

    def test_account_event_without_account_ignored(self, reconciler, stripe_stub):
        body, headers = stripe_stub.build_webhook(STRIPE_WEBHOOK_SECRET, "account_invalidated")
        assert reconciler.handle("stripe", body, headers).status == "ignored"


def _world():
    """A self-contained engine for property tests (no function-scoped fixtures)."""
    db = build_engine("sqlite://")
    create_schema(db)
    factory = build_session_factory(db)
    stub = StubProvider("stripe")
    registry = ProviderRegistry({"stripe": stub})
    contracts = InMemoryContractDirectory(
        [ContractInfo(CONTRACT, PAYER, PAYEE, "active", 10000)]
    )
    accounts = InMemoryAccountDirectory()
    accounts.link(PAYER, "stripe", "cus_payer")
    accounts.link(PAYEE, "stripe", "acct_payee")
    collector = EventCollector()
    emitter = EventEmitter()
    emitter.on_all(collector)
    engine = SettlementEngine(factory, registry, contracts, accounts, emitter=emitter)
    reconciler = WebhookReconciler(factory, engine, registry, {"stripe": STRIPE_WEBHOOK_SECRET})
    return db, stub, engine, reconciler, collector


class TestConvergence:
    """Any delivery order of the same events ends in the same state."""

    @settings(max_examples=40, deadline=None)
    @given(
        st.permutations(
            ["payment_processing", "payment_requires_capture", "payment_succeeded"]
        ),
        st.lists(st.integers(min_value=0, max_value=2), max_size=3),
    )
    def test_payment_events_converge_to_succeeded(self, order, redeliveries):
        db, stub, engine, reconciler, collector = _world()
        try:
            charge = engine.initiate(CONTRACT, PAYER, "stripe")
            deliveries = [
                stub.build_webhook(
                    STRIPE_WEBHOOK_SECRET, kind, ref=charge.external_ref, event_id=f"evt_{kind}"
                )
                for kind in order
            ]
            deliveries += [deliveries[i] for i in redeliveries]

            for body, headers in deliveries:
                reconciler.handle("stripe", body, headers)

            assert engine.get_record(charge.payment_id).status == "succeeded"
            assert len(collector.of_type(PaymentSucceeded)) == 1
            assert engine.balance(PAYEE, "stripe").available == 10000
        finally:
            engine.caller.close()
            db.dispose()

    @settings(max_examples=30, deadline=None)
    @given(
        st.permutations(
            [
                "payment_processing",
                "payment_requires_capture",
                "payment_succeeded",
                "refund_completed",
            ]
        )
    )
    def test_refund_wins_regardless_of_order(self, order):
        db, stub, engine, reconciler, _ = _world()
        try:
            charge = engine.initiate(CONTRACT, PAYER, "stripe")
            for kind in order:
                body, headers = stub.build_webhook(
                    STRIPE_WEBHOOK_SECRET, kind, ref=charge.external_ref, event_id=f"evt_{kind}"
                )
                reconciler.handle("stripe", body, headers)

            assert engine.get_record(charge.payment_id).status == "refunded"
            assert engine.balance(PAYEE, "stripe").available == 0
        finally:
            engine.caller.close()
            db.dispose()

    def test_every_order_of_failure_and_success(self):
        """Failure and success race: whichever lands first wins, the other is stale."""
        for order in itertools.permutations(["payment_failed", "payment_succeeded"]):
            db, stub, engine, reconciler, _ = _world()
            try:
                charge = engine.initiate(CONTRACT, PAYER, "stripe")
                for kind in order:
                    body, headers = stub.build_webhook(
                        STRIPE_WEBHOOK_SECRET, kind, ref=charge.external_ref
                    )
                    reconciler.handle("stripe", body, headers)
                expected = "failed" if order[0] == "payment_failed" else "succeeded"
                assert engine.get_record(charge.payment_id).status == expected
            finally:
                engine.caller.close()
                db.dispose()
