"""Tests for domain events and the event emitter."""

import json
from uuid import uuid4

from settlement_engine.events import (
    EventCategory,
    EventCollector,
    EventEmitter,
    EventMetadata,
    PaymentFailed,
    PaymentSucceeded,
    WebhookRejected,
    WithdrawalRequested,
)


def succeeded() -> PaymentSucceeded:
    return PaymentSucceeded(
        metadata=EventMetadata.create(actor_type="webhook"),
        payment_id=uuid4(),
        contract_ref="contract-1",
        provider="stripe",
        payee_id="payee-1",
        amount_received_by_payee=10000,
        currency="cad",
    )


def withdrawal() -> WithdrawalRequested:
    return WithdrawalRequested(
        metadata=EventMetadata.create(actor_id="payee-1", actor_type="user"),
        withdrawal_id=uuid4(),
        user_id="payee-1",
        provider="stripe",
        amount=2500,
        currency="cad",
    )


class TestDomainEvents:
    """Event identity and serialization."""

    def test_event_type_and_category(self):
        event = succeeded()
        assert event.event_type == "PaymentSucceeded"
        assert event.category == EventCategory.PAYMENT
        assert withdrawal().category == EventCategory.WITHDRAWAL

    def test_to_dict_serializes_ids_and_timestamps(self):
        event = succeeded()
        data = event.to_dict()

        assert data["event_type"] == "PaymentSucceeded"
        assert data["payment_id"] == str(event.payment_id)
        assert data["metadata"]["actor_type"] == "webhook"
        assert data["metadata"]["timestamp"] == event.metadata.timestamp.isoformat()

    def test_to_json_round_trips_through_json(self):
        data = json.loads(withdrawal().to_json())
        assert data["amount"] == 2500
        assert data["metadata"]["actor_id"] == "payee-1"

    def test_metadata_defaults(self):
        meta = EventMetadata.create()
        assert meta.actor_type == "system"
        assert meta.source_service == "settlement"
        assert meta.event_id != meta.correlation_id


class TestEventEmitter:
    """Routing and handler isolation."""

    def test_type_filter(self):
        emitter = EventEmitter()
        seen = []
        emitter.on(PaymentSucceeded, seen.append)

        emitter.emit(succeeded())
        emitter.emit(withdrawal())

        assert [e.event_type for e in seen] == ["PaymentSucceeded"]

    def test_multiple_types(self):
        emitter = EventEmitter()
        seen = []
        emitter.on([PaymentSucceeded, WithdrawalRequested], seen.append)

        emitter.emit_all([succeeded(), withdrawal()])

        assert len(seen) == 2

    def test_category_filter(self):
        emitter = EventEmitter()
        seen = []
        emitter.on_category(EventCategory.WITHDRAWAL, seen.append)

        emitter.emit_all([succeeded(), withdrawal()])

        assert [e.event_type for e in seen] == ["WithdrawalRequested"]

    def test_failing_handler_is_isolated(self):
        emitter = EventEmitter()
        collector = EventCollector()

        def broken(event):
            raise RuntimeError("notification service down")

        emitter.on_all(broken)
        emitter.on_all(collector)

        errors = emitter.emit(succeeded())

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert len(collector.events) == 1

    def test_off(self):
        emitter = EventEmitter()
        collector = EventCollector()
        emitter.on_all(collector)
        emitter.off(collector)

        emitter.emit(succeeded())

        assert collector.events == []

    def test_collector_of_type(self):
        collector = EventCollector()
        collector(succeeded())
        collector(
            WebhookRejected(metadata=EventMetadata.create(), provider="nuvei", reason="stale")
        )
        collector(
            PaymentFailed(
                metadata=EventMetadata.create(),
                payment_id=uuid4(),
                contract_ref=None,
                provider="stripe",
                status="failed",
            )
        )

        assert [e.reason for e in collector.of_type(WebhookRejected)] == ["stale"]
        assert len(collector.of_type(PaymentFailed)) == 1
