"""Settlement engine: initiation, confirmation, escrow release, refund, withdrawal.

Each operation is a sequence of short transactions with provider network I/O
between them, never inside:

1. read + validate + claim ``in_flight_operation`` (compare-and-swap)
2. call the provider through ProviderCaller (timeout + bounded retry)
3. record the outcome and release the claim (compare-and-swap)

Webhook-driven operations (advance, complete_refund, apply_payout_status,
handle_account_status) only move records forward along the state machine;
an event whose target is not reachable from the current state is stale and
is acknowledged without effect.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.calculators.fees import FeeBreakdown, FeeCalculator
from settlement_engine.database import session_scope
from settlement_engine.errors import (
    AccountInvalidError,
    AuthorizationError,
    ConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidContractStateError,
    InvalidStateError,
    NotFoundError,
    OperationInFlightError,
    ProviderAccountMissingError,
    ProviderError,
    ProviderTransientError,
)
from settlement_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    PaymentAuthorized,
    PaymentFailed,
    PaymentInitiated,
    PaymentRefunded,
    PaymentSucceeded,
    ProviderAccountInvalidated,
    RefundRequested,
    WithdrawalCompleted,
    WithdrawalFailed,
    WithdrawalRequested,
)
from settlement_engine.models import PaymentRecord
from settlement_engine.models.base import utcnow
from settlement_engine.providers.base import (
    AccountStatus,
    ChargeRequest,
    ChargeStatus,
    PaymentProvider,
    PayoutStatus,
)
from settlement_engine.providers.registry import ProviderRegistry
from settlement_engine.services.balance_ledger import BalanceLedger, BalanceSnapshot
from settlement_engine.services.collaborators import AccountDirectory, ContractDirectory
from settlement_engine.services.provider_caller import ProviderCaller
from settlement_engine.services.record_store import HistoryPage, PaymentRecordStore
from settlement_engine.services.state_machine import PaymentStateMachine, PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_PAYABLE_STATUSES = ("pending_payment", "active", "submitted", "failed")

# Compare-and-swap attempts before giving up on a hot record
MAX_CAS_ATTEMPTS = 5

CHARGE_STATUS_TARGET = {
    ChargeStatus.SUCCEEDED: PaymentStatus.SUCCEEDED,
    ChargeStatus.REQUIRES_CAPTURE: PaymentStatus.REQUIRES_CAPTURE,
    ChargeStatus.PENDING: PaymentStatus.PROCESSING,
    ChargeStatus.FAILED: PaymentStatus.FAILED,
}

PAYOUT_STATUS_TARGET = {
    PayoutStatus.SUCCEEDED: PaymentStatus.SUCCEEDED,
    PayoutStatus.PROCESSING: PaymentStatus.PROCESSING,
    PayoutStatus.FAILED: PaymentStatus.FAILED,
}

# Statuses whose provider transaction is the one later captured or refunded
REBIND_TARGETS = {PaymentStatus.REQUIRES_CAPTURE, PaymentStatus.SUCCEEDED}

# A write decision: (new status or None, other column values), or None for no-op
Decision = tuple[PaymentStatus | None, dict] | None


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the external auth layer."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class InitiateResult:
    """Result of opening a charge for a contract."""

    payment_id: UUID
    external_ref: str
    status: str
    client_secret: str | None
    session_id: str | None
    fees: FeeBreakdown


@dataclass(frozen=True)
class WithdrawalResult:
    """Result of a withdrawal request.

    ``status`` is the record status after the payout call: succeeded,
    processing (provider settles later) or failed.
    """

    withdrawal_id: UUID
    status: str
    amount: int
    currency: str
    external_ref: str | None
    available_after: int
    error_code: str | None = None


class SettlementEngine:
    """Owns every state change of payment records."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        providers: ProviderRegistry,
        contracts: ContractDirectory,
        accounts: AccountDirectory,
        *,
        fee_calculator: FeeCalculator | None = None,
        caller: ProviderCaller | None = None,
        emitter: EventEmitter | None = None,
        default_currency: str = "cad",
        payable_statuses: tuple[str, ...] = DEFAULT_PAYABLE_STATUSES,
        capture_manually: bool = False,
        in_flight_timeout: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self.contracts = contracts
        self.accounts = accounts
        self.fees = fee_calculator or FeeCalculator()
        self.caller = caller or ProviderCaller()
        self.emitter = emitter or EventEmitter()
        self.default_currency = default_currency
        self.payable_statuses = tuple(payable_statuses)
        self.capture_manually = capture_manually
        self.in_flight_timeout = in_flight_timeout
        self._clock = clock

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def initiate(
        self,
        contract_ref: str,
        payer_id: str,
        provider_name: str,
        *,
        currency: str | None = None,
    ) -> InitiateResult:
        """Open a charge for a contract.

        Raises:
            ValidationError: Unknown provider, non-payable contract, bad amount.
            NotFoundError: Contract does not exist.
            AuthorizationError: Caller is not the contract's payer.
            ProviderAccountMissingError: A party has no account with the provider.
            AccountInvalidError: The payee's account was rejected by the provider.
            InvalidStateError: A live payment already exists for the contract.
        """
        provider = self.providers.get(provider_name)
        provider_key = provider.provider_name
        currency = (currency or self.default_currency).lower()

        contract = self.contracts.get_contract(contract_ref)
        if contract is None:
            raise NotFoundError("Contract not found", code="CONTRACT_NOT_FOUND")
        if contract.payer_id != payer_id:
            raise AuthorizationError("Only the contract's payer can pay for it")
        if contract.status not in self.payable_statuses:
            raise InvalidContractStateError(
                f"Contract not awaiting payment (status: {contract.status})"
            )

        fees = self.fees.calculate(contract.service_amount)

        payer_account = self.accounts.get_provider_account_ref(contract.payer_id, provider_key)
        if not payer_account:
            raise ProviderAccountMissingError(f"Payer has no {provider_key} account")
        payee_account = self.accounts.get_provider_account_ref(contract.payee_id, provider_key)
        if not payee_account:
            raise ProviderAccountMissingError(f"Payee has no {provider_key} account")

        status = self.caller.call("verify_account", provider.verify_account, payee_account)
        if status == AccountStatus.INVALID:
            self._invalidate_account(provider_key, payee_account)
            raise AccountInvalidError("Payee's provider account is no longer valid")

        record_id, idempotency_key = self._prepare_charge(contract, provider_key, fees, currency)

        request = ChargeRequest(
            payment_id=str(record_id),
            contract_ref=contract_ref,
            amount=fees.total_payer_amount,
            platform_amount=fees.platform_amount,
            service_amount=fees.service_amount,
            currency=currency,
            payer_account_ref=payer_account,
            payee_account_ref=payee_account,
            description=contract.description or "",
            capture_manually=self.capture_manually,
            idempotency_key=idempotency_key,
            metadata={"payer_id": contract.payer_id, "payee_id": contract.payee_id},
        )
        try:
            charge = self.caller.call("open_charge", provider.open_charge, request)
        except ProviderError as exc:
            self._release_claim(record_id, exc)
            if isinstance(exc, AccountInvalidError):
                self._invalidate_account(provider_key, payee_account)
            raise

        refs = {k: v for k, v in charge.extra_refs.items()}
        if charge.client_secret:
            refs["client_secret"] = charge.client_secret
        if charge.session_id:
            refs["session_id"] = charge.session_id
        target = CHARGE_STATUS_TARGET.get(charge.status)

        def record_charge(record: PaymentRecord) -> Decision:
            values = {
                "external_ref": charge.external_ref,
                "external_refs": {**(record.external_refs or {}), **refs},
                "in_flight_operation": None,
                "last_error_code": None,
                "last_error_message": None,
            }
            # A freshly opened charge normally stays requires_payment_method
            if target in (None, PaymentStatus.PROCESSING):
                return None, values
            return self._forward(record, target, values)

        with self._transaction() as session:
            record, changed = self._mutate(session, record_id, record_charge, source="api")
            result = InitiateResult(
                payment_id=record.id,
                external_ref=charge.external_ref,
                status=record.status,
                client_secret=charge.client_secret,
                session_id=charge.session_id,
                fees=fees,
            )
            event = PaymentInitiated(
                metadata=self._metadata(actor_id=payer_id, actor_type="user"),
                payment_id=record.id,
                contract_ref=contract_ref,
                provider=provider_key,
                payer_id=contract.payer_id,
                payee_id=contract.payee_id,
                total_payer_amount=fees.total_payer_amount,
                currency=currency,
            )
            events: list[DomainEvent] = [event]
            if changed:
                events.extend(self._payment_events(record))

        logger.info(
            "Initiated payment %s for contract %s via %s (%s)",
            result.payment_id,
            contract_ref,
            provider_key,
            charge.external_ref,
        )
        self._emit(events)
        return result

    def _prepare_charge(self, contract, provider_key: str, fees: FeeBreakdown, currency: str):
        """Create, reopen or reuse the contract's record and claim it for charging."""
        idempotency_key = f"charge-{uuid4().hex}"
        money = {
            "service_amount": fees.service_amount,
            "application_fee_amount": fees.application_fee_amount,
            "provider_tax_amount": fees.provider_tax_amount,
            "total_payer_amount": fees.total_payer_amount,
            "amount_received_by_payee": fees.amount_received_by_payee,
            "currency": currency,
        }
        try:
            with self._transaction() as session:
                store = PaymentRecordStore(session)
                existing = store.get_by_contract(contract.contract_ref)

                if existing is None:
                    record = PaymentRecord(
                        id=uuid4(),
                        contract_ref=contract.contract_ref,
                        gig_ref=contract.gig_ref,
                        provider=provider_key,
                        record_type="payment",
                        description=contract.description,
                        payer_id=contract.payer_id,
                        payee_id=contract.payee_id,
                        status=PaymentStatus.REQUIRES_PAYMENT_METHOD.value,
                        external_refs={},
                        in_flight_operation="charge",
                        idempotency_key=idempotency_key,
                        **money,
                    )
                    store.create(record, source="api")
                    return record.id, idempotency_key

                if existing.provider != provider_key:
                    raise InvalidStateError(
                        f"Payment for this contract was started with {existing.provider}"
                    )

                status = PaymentStatus(existing.status)
                claim = {
                    "idempotency_key": idempotency_key,
                    "external_ref": None,
                    "last_error_code": None,
                    "last_error_message": None,
                    "payer_id": contract.payer_id,
                    "payee_id": contract.payee_id,
                    **money,
                }

                if status in PaymentStateMachine.REOPENABLE:
                    PaymentStateMachine.validate_reopen(status)
                    won = store.compare_and_set(
                        existing,
                        status=PaymentStatus.REQUIRES_PAYMENT_METHOD,
                        source="api",
                        in_flight_operation="charge",
                        external_refs={},
                        succeeded_at=None,
                        **claim,
                    )
                    if won:
                        logger.info("Reopened %s payment %s", status.value, existing.id)
                        return existing.id, idempotency_key
                elif (
                    status == PaymentStatus.REQUIRES_PAYMENT_METHOD
                    and existing.external_ref is None
                ):
                    stale_claim = existing.in_flight_operation == "charge" and self._is_stale(
                        existing.updated_at
                    )
                    if existing.in_flight_operation is None:
                        won = store.claim_in_flight(existing, "charge", **claim)
                    elif stale_claim:
                        logger.warning("Reclaiming stale charge claim on %s", existing.id)
                        won = store.compare_and_set(existing, in_flight_operation="charge", **claim)
                    else:
                        raise OperationInFlightError("Payment is already being initiated")
                    if won:
                        return existing.id, idempotency_key
                else:
                    raise InvalidStateError(f"Payment already in status: {status.value}")

                raise OperationInFlightError("Payment is being initiated concurrently")
        except IntegrityError as exc:
            raise InvalidStateError("A payment already exists for this contract") from exc

    # ------------------------------------------------------------------
    # Confirm / advance
    # ------------------------------------------------------------------

    def confirm(
        self,
        external_ref: str,
        *,
        actor: Actor | None = None,
        event_id: str | None = None,
        verified: bool = False,
        payment_ref: str | None = None,
        session_ref: str | None = None,
    ) -> PaymentRecord:
        """Confirm a payment with its provider and advance the record.

        ``external_ref`` is the provider transaction. Checkout flows that
        open a session first (Nuvei) may pass the session token as
        ``session_ref`` to find the record; the transaction reference then
        replaces the session token as the record's ``external_ref``.

        With ``verified=True`` (a signed provider event), the provider round
        trip is skipped and the record advances to succeeded. Idempotent: an
        already-succeeded record is returned unchanged.
        """
        with self._transaction() as session:
            record = self._find_payment(session, external_ref, payment_ref, session_ref)
            if actor is not None:
                self._authorize(record, actor, allow_payee=False)
            if record.status == PaymentStatus.SUCCEEDED.value and (
                record.external_ref == external_ref or not external_ref
            ):
                return record
            record_id = record.id
            provider_key = record.provider
            ref = external_ref or record.external_ref

        if verified:
            target = PaymentStatus.SUCCEEDED
        else:
            provider = self.providers.get(provider_key)
            charge_status = self.caller.call("confirm", provider.confirm, ref)
            target = CHARGE_STATUS_TARGET[charge_status]

        source = "webhook" if event_id else "api"
        return self._advance_record(
            record_id, target, event_id=event_id, source=source, external_ref=external_ref
        )

    def advance(
        self,
        external_ref: str | None,
        target: PaymentStatus,
        *,
        event_id: str | None = None,
        payment_ref: str | None = None,
    ) -> PaymentRecord:
        """Apply a provider-reported status to a payment (webhook path)."""
        with self._transaction() as session:
            record_id = self._find_payment(session, external_ref, payment_ref).id
        return self._advance_record(
            record_id, target, event_id=event_id, source="webhook", external_ref=external_ref
        )

    def _advance_record(
        self,
        record_id: UUID,
        target: PaymentStatus,
        *,
        event_id: str | None,
        source: str,
        external_ref: str | None = None,
    ) -> PaymentRecord:
        def decide(record: PaymentRecord) -> Decision:
            if event_id and record.last_processed_event_id == event_id:
                return None
            values = self._rebind(record, external_ref, target)
            if record.status == target.value:
                return (None, values) if values else None
            if event_id:
                values["last_processed_event_id"] = event_id
            return self._forward(record, target, values, strict=False)

        with self._transaction() as session:
            record, changed = self._mutate(
                session, record_id, decide, source=source, event_id=event_id
            )
            events = self._payment_events(record) if changed else []
        self._emit(events)
        return record

    # ------------------------------------------------------------------
    # Release (escrow capture)
    # ------------------------------------------------------------------

    def release(self, contract_ref: str, actor: Actor) -> PaymentRecord:
        """Capture held funds and mark the payment succeeded."""
        with self._transaction() as session:
            store = PaymentRecordStore(session)
            record = self._get_by_contract(store, contract_ref)
            self._authorize(record, actor, allow_payee=False)
            if record.status == PaymentStatus.SUCCEEDED.value and record.in_flight_operation is None:
                return record
            if record.status != PaymentStatus.REQUIRES_CAPTURE.value:
                raise InvalidStateError(
                    f"Payment cannot be released in current status: {record.status}"
                )
            self._claim(store, record, "capture")
            record_id, provider_key, ref = record.id, record.provider, record.external_ref

        provider = self.providers.get(provider_key)
        try:
            self.caller.call("capture", provider.capture, ref)
        except ProviderError as exc:
            self._release_claim(record_id, exc)
            raise

        def captured(record: PaymentRecord) -> Decision:
            values = {"in_flight_operation": None, "last_error_code": None, "last_error_message": None}
            if record.status == PaymentStatus.SUCCEEDED.value:
                return None, values
            return self._forward(record, PaymentStatus.SUCCEEDED, values, strict=False)

        with self._transaction() as session:
            record, changed = self._mutate(session, record_id, captured, source="api")
            events = self._payment_events(record) if changed else []
        logger.info("Released escrow for payment %s", record_id)
        self._emit(events)
        return record

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def refund(self, contract_ref: str, actor: Actor) -> PaymentRecord:
        """Return a succeeded or held payment to the payer."""
        with self._transaction() as session:
            store = PaymentRecordStore(session)
            record = self._get_by_contract(store, contract_ref)
            self._authorize(record, actor, allow_payee=False)
            if PaymentStatus(record.status) not in PaymentStateMachine.REFUNDABLE:
                raise InvalidStateError(
                    f"Payment cannot be refunded in current status: {record.status}"
                )
            key = f"refund-{record.id}"
            self._claim(store, record, "refund", idempotency_key=key)
            record_id, provider_key, ref = record.id, record.provider, record.external_ref

        provider = self.providers.get(provider_key)
        try:
            result = self.caller.call("refund", provider.refund, ref, key)
        except ProviderError as exc:
            self._release_claim(record_id, exc)
            raise

        target = PaymentStatus.REFUNDED if result.completed else PaymentStatus.REFUND_PENDING

        def refunded(record: PaymentRecord) -> Decision:
            values = {
                "in_flight_operation": None,
                "last_error_code": None,
                "last_error_message": None,
                "external_refs": {**(record.external_refs or {}), "refund_id": result.refund_ref},
            }
            if record.status == target.value:
                return None, values
            return self._forward(record, target, values, strict=False)

        with self._transaction() as session:
            record, changed = self._mutate(session, record_id, refunded, source="api")
            meta = self._metadata(actor_id=actor.user_id, actor_type="user")
            events: list[DomainEvent] = [
                RefundRequested(
                    metadata=meta,
                    payment_id=record.id,
                    contract_ref=record.contract_ref,
                    provider=record.provider,
                    refund_ref=result.refund_ref,
                )
            ]
            if changed:
                events.extend(self._payment_events(record))
        logger.info("Refund %s requested for payment %s", result.refund_ref, record_id)
        self._emit(events)
        return record

    def complete_refund(
        self,
        external_ref: str | None,
        *,
        event_id: str | None = None,
        payment_ref: str | None = None,
    ) -> PaymentRecord:
        """Provider confirmed a refund (webhook path)."""
        return self.advance(
            external_ref, PaymentStatus.REFUNDED, event_id=event_id, payment_ref=payment_ref
        )

    # ------------------------------------------------------------------
    # Withdraw
    # ------------------------------------------------------------------

    def withdraw(
        self,
        user_id: str,
        amount: int,
        provider_name: str,
        *,
        currency: str | None = None,
    ) -> WithdrawalResult:
        """Pay out part of a user's available balance.

        Raises:
            InvalidAmountError: amount is not a positive integer.
            ProviderAccountMissingError: The user has no account with the provider.
            InsufficientBalanceError: amount exceeds the available balance. No
                record is created.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError("Withdrawal amount must be greater than 0")
        provider = self.providers.get(provider_name)
        provider_key = provider.provider_name
        currency = (currency or self.default_currency).lower()
        breakdown = FeeCalculator.withdrawal(amount)

        account_ref = self.accounts.get_provider_account_ref(user_id, provider_key)
        if not account_ref:
            raise ProviderAccountMissingError(f"No {provider_key} account linked for withdrawals")

        with self._transaction() as session:
            ledger = BalanceLedger(session)
            ledger.lock(user_id, provider_key)
            snapshot = ledger.snapshot(user_id, provider_key, currency)
            if amount > snapshot.available:
                logger.info(
                    "Withdrawal of %d refused for %s: available %d",
                    amount,
                    user_id,
                    snapshot.available,
                )
                raise InsufficientBalanceError(requested=amount, available=snapshot.available)

            record_id = uuid4()
            record = PaymentRecord(
                id=record_id,
                contract_ref=None,
                provider=provider_key,
                record_type="withdrawal",
                description=f"Withdrawal to {provider_key} account",
                payer_id=user_id,
                payee_id=user_id,
                service_amount=breakdown.service_amount,
                application_fee_amount=0,
                provider_tax_amount=0,
                total_payer_amount=breakdown.total_payer_amount,
                amount_received_by_payee=breakdown.amount_received_by_payee,
                currency=currency,
                status=PaymentStatus.PROCESSING.value,
                external_refs={"account_ref": account_ref},
                in_flight_operation="payout",
                idempotency_key=f"payout-{record_id}",
            )
            PaymentRecordStore(session).create(record, source="api")
            available_after = snapshot.available - amount

        self._emit(
            [
                WithdrawalRequested(
                    metadata=self._metadata(actor_id=user_id, actor_type="user"),
                    withdrawal_id=record_id,
                    user_id=user_id,
                    provider=provider_key,
                    amount=amount,
                    currency=currency,
                )
            ]
        )
        return self._issue_payout(
            record_id, provider, account_ref, amount, currency, f"payout-{record_id}", available_after
        )

    def resume_withdrawal(self, record_id: UUID) -> WithdrawalResult:
        """Re-issue a payout whose first call never produced a provider reference.

        Reuses the stored idempotency key, so the provider deduplicates it if
        the first call did in fact go through.
        """
        with self._transaction() as session:
            store = PaymentRecordStore(session)
            record = store.get(record_id)
            if record is None or not record.is_withdrawal:
                raise NotFoundError("Withdrawal not found")
            if record.status != PaymentStatus.PROCESSING.value or record.external_ref is not None:
                raise ConflictError(
                    "Withdrawal already has a provider reference and cannot be re-issued"
                )
            won = store.compare_and_set(
                record,
                where=PaymentRecord.external_ref.is_(None),
                in_flight_operation="payout",
            )
            if not won:
                raise OperationInFlightError("Withdrawal is being updated concurrently")
            user_id = record.payee_id
            provider_key = record.provider
            amount = record.amount_received_by_payee
            currency = record.currency
            key = record.idempotency_key or f"payout-{record.id}"
            stored_account = (record.external_refs or {}).get("account_ref")
            available_after = BalanceLedger(session).snapshot(user_id, provider_key, currency).available

        account_ref = self.accounts.get_provider_account_ref(user_id, provider_key) or stored_account
        if not account_ref:
            raise ProviderAccountMissingError(f"No {provider_key} account linked for withdrawals")
        provider = self.providers.get(provider_key)
        logger.info("Resuming withdrawal %s", record_id)
        return self._issue_payout(
            record_id, provider, account_ref, amount, currency, key, available_after
        )

    def _issue_payout(
        self,
        record_id: UUID,
        provider: PaymentProvider,
        account_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        available_after: int,
    ) -> WithdrawalResult:
        try:
            payout = self.caller.call(
                "payout", provider.payout, account_ref, amount, currency, idempotency_key
            )
        except ProviderTransientError as exc:
            # Outcome unknown: keep the funds reserved until resumed or reconciled
            self._release_claim(record_id, exc)
            logger.warning("Payout for withdrawal %s left processing: %s", record_id, exc.code)
            raise
        except ProviderError as exc:
            if isinstance(exc, AccountInvalidError):
                self._invalidate_account(provider.provider_name, account_ref)

            def failed(record: PaymentRecord) -> Decision:
                values = {
                    "in_flight_operation": None,
                    "last_error_code": exc.code,
                    "last_error_message": exc.message,
                }
                return self._forward(record, PaymentStatus.FAILED, values, strict=False)

            with self._transaction() as session:
                record, changed = self._mutate(session, record_id, failed, source="system")
                events = self._withdrawal_events(record) if changed else []
            self._emit(events)
            logger.warning("Payout for withdrawal %s failed: %s", record_id, exc.code)
            raise

        target = PAYOUT_STATUS_TARGET[payout.status]

        def paid(record: PaymentRecord) -> Decision:
            values = {
                "external_ref": payout.external_ref,
                "in_flight_operation": None,
                "last_error_code": None,
                "last_error_message": None,
            }
            if record.status == target.value:
                return None, values
            return self._forward(record, target, values, strict=False)

        with self._transaction() as session:
            record, changed = self._mutate(session, record_id, paid, source="api")
            events = self._withdrawal_events(record) if changed else []
            result = WithdrawalResult(
                withdrawal_id=record.id,
                status=record.status,
                amount=amount,
                currency=currency,
                external_ref=record.external_ref,
                available_after=available_after,
                error_code=record.last_error_code,
            )
        logger.info(
            "Withdrawal %s of %d %s: %s (%s)",
            record_id,
            amount,
            currency,
            result.status,
            payout.external_ref,
        )
        self._emit(events)
        return result

    def apply_payout_status(
        self,
        external_ref: str,
        status: PayoutStatus,
        *,
        event_id: str | None = None,
    ) -> PaymentRecord:
        """Provider reported a payout settled or failed (webhook path)."""
        target = PAYOUT_STATUS_TARGET[status]

        with self._transaction() as session:
            record = PaymentRecordStore(session).get_by_external_ref(external_ref)
            if record is None or not record.is_withdrawal:
                raise NotFoundError("Withdrawal not found", code="RECORD_NOT_FOUND")
            record_id = record.id

        def decide(record: PaymentRecord) -> Decision:
            if event_id and record.last_processed_event_id == event_id:
                return None
            if record.status == target.value:
                return None
            values = {"last_processed_event_id": event_id} if event_id else {}
            return self._forward(record, target, values, strict=False)

        with self._transaction() as session:
            record, changed = self._mutate(
                session, record_id, decide, source="webhook", event_id=event_id
            )
            events = self._withdrawal_events(record) if changed else []
        self._emit(events)
        return record

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def handle_account_status(self, provider_name: str, account_ref: str) -> list[str]:
        """Provider reported a connected account unusable; unlink it."""
        return self._invalidate_account(provider_name, account_ref)

    def _invalidate_account(self, provider_key: str, account_ref: str) -> list[str]:
        cleared = self.accounts.invalidate_provider_account(provider_key, account_ref)
        logger.warning(
            "Invalidated %s account %s (users: %s)", provider_key, account_ref, cleared or "none"
        )
        self._emit(
            [
                ProviderAccountInvalidated(
                    metadata=self._metadata(),
                    provider=provider_key,
                    account_ref=account_ref,
                )
            ]
        )
        return cleared

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payment(self, contract_ref: str, actor: Actor) -> PaymentRecord:
        with self._transaction() as session:
            record = self._get_by_contract(PaymentRecordStore(session), contract_ref)
            self._authorize(record, actor, allow_payee=True)
            return record

    def get_record(self, record_id: UUID) -> PaymentRecord:
        with self._transaction() as session:
            record = PaymentRecordStore(session).get(record_id)
            if record is None:
                raise NotFoundError("Payment record not found", code="RECORD_NOT_FOUND")
            return record

    def history(
        self,
        user_id: str,
        *,
        record_type: str | None = None,
        status: str | None = None,
        provider: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> HistoryPage:
        with self._transaction() as session:
            return PaymentRecordStore(session).history(
                user_id,
                record_type=record_type,
                status=status,
                provider=provider,
                page=page,
                page_size=page_size,
            )

    def balance(
        self, user_id: str, provider_name: str, *, currency: str | None = None
    ) -> BalanceSnapshot:
        provider_key = self.providers.get(provider_name).provider_name
        with self._transaction() as session:
            return BalanceLedger(session).snapshot(
                user_id, provider_key, (currency or self.default_currency).lower()
            )

    def all_balances(self, user_id: str) -> list[BalanceSnapshot]:
        with self._transaction() as session:
            return BalanceLedger(session).all_balances(user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with session_scope(self.session_factory) as session:
            yield session

    def _mutate(
        self,
        session: Session,
        record_id: UUID,
        decide: Callable[[PaymentRecord], Decision],
        *,
        source: str,
        event_id: str | None = None,
    ) -> tuple[PaymentRecord, bool]:
        """Re-read, decide and compare-and-swap until the write wins.

        Returns the fresh record and whether its status changed.
        """
        store = PaymentRecordStore(session)
        for _ in range(MAX_CAS_ATTEMPTS):
            record = store.get(record_id)
            if record is None:
                raise NotFoundError("Payment record not found", code="RECORD_NOT_FOUND")
            decision = decide(record)
            if decision is None:
                return record, False
            status, values = decision
            path = values.pop("_path", None)
            previous = record.status
            if store.compare_and_set(
                record, status=status, path=path, source=source, event_id=event_id, **values
            ):
                return record, status is not None and record.status != previous
        raise ConflictError("Payment record is being updated concurrently")

    def _forward(
        self,
        record: PaymentRecord,
        target: PaymentStatus,
        values: dict,
        *,
        strict: bool = True,
    ) -> Decision:
        """Decision moving a record forward to target, stamping timestamps on the way.

        With ``strict=False`` an unreachable target is stale: only ``values``
        are written (if any) and the status is left alone.
        """
        path = PaymentStateMachine.path_to(record.status, target)
        if path is None:
            if strict:
                PaymentStateMachine.validate_transition(record.status, target)
            logger.info(
                "Ignoring stale transition of %s from %s to %s",
                record.id,
                record.status,
                target.value,
            )
            values.pop("last_processed_event_id", None)
            return (None, values) if values else None
        if not path:
            return (None, values) if values else None

        now = self._clock()
        if PaymentStatus.SUCCEEDED in path:
            values["succeeded_at"] = now
        if PaymentStatus.REFUNDED in path:
            values["refunded_at"] = now
        values["_path"] = [s.value for s in path]
        return target, values

    @staticmethod
    def _rebind(
        record: PaymentRecord, external_ref: str | None, target: PaymentStatus
    ) -> dict:
        """Columns adopting a provider transaction reference reported for the record.

        Session-based checkouts learn the transaction id only when it settles;
        the session token is kept under ``external_refs["session_id"]``.
        """
        if not external_ref or record.external_ref == external_ref:
            return {}
        if target not in REBIND_TARGETS:
            return {}
        if PaymentStateMachine.path_to(record.status, target) is None:
            return {}
        refs = dict(record.external_refs or {})
        if record.external_ref:
            refs.setdefault("session_id", record.external_ref)
        logger.info(
            "Payment %s bound to provider transaction %s (was %s)",
            record.id,
            external_ref,
            record.external_ref,
        )
        return {"external_ref": external_ref, "external_refs": refs}

    def _find_payment(
        self,
        session: Session,
        external_ref: str | None,
        payment_ref: str | None,
        session_ref: str | None = None,
    ) -> PaymentRecord:
        store = PaymentRecordStore(session)
        record = store.get_by_external_ref(external_ref) if external_ref else None
        if record is None and session_ref:
            record = store.get_by_external_ref(session_ref)
        if record is None and payment_ref:
            try:
                record = store.get(UUID(payment_ref))
            except ValueError:
                record = None
        if record is None or record.is_withdrawal:
            raise NotFoundError("Payment record not found", code="RECORD_NOT_FOUND")
        return record

    @staticmethod
    def _get_by_contract(store: PaymentRecordStore, contract_ref: str) -> PaymentRecord:
        record = store.get_by_contract(contract_ref)
        if record is None:
            raise NotFoundError("Payment record not found", code="RECORD_NOT_FOUND")
        return record

    @staticmethod
    def _authorize(record: PaymentRecord, actor: Actor, *, allow_payee: bool) -> None:
        if actor.is_admin or actor.user_id == record.payer_id:
            return
        if allow_payee and actor.user_id == record.payee_id:
            return
        raise AuthorizationError("Not authorized for this payment")

    def _claim(
        self, store: PaymentRecordStore, record: PaymentRecord, operation: str, **values
    ) -> None:
        if record.in_flight_operation is not None and not self._is_stale(record.updated_at):
            raise OperationInFlightError(
                f"A {record.in_flight_operation} is already in progress for this payment"
            )
        if record.in_flight_operation is None:
            won = store.claim_in_flight(record, operation, **values)
        else:
            logger.warning(
                "Reclaiming stale %s claim on %s", record.in_flight_operation, record.id
            )
            won = store.compare_and_set(record, in_flight_operation=operation, **values)
        if not won:
            raise OperationInFlightError("Payment is being updated concurrently")

    def _release_claim(self, record_id: UUID, error: ProviderError) -> None:
        """Clear the in-flight claim after a failed provider call and record the error."""

        def release(record: PaymentRecord) -> Decision:
            return None, {
                "in_flight_operation": None,
                "last_error_code": error.code,
                "last_error_message": error.message,
            }

        with self._transaction() as session:
            self._mutate(session, record_id, release, source="system")

    def _is_stale(self, updated_at: datetime | None) -> bool:
        if updated_at is None:
            return True
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return self._clock() - updated_at > self.in_flight_timeout

    def _metadata(self, actor_id: str | None = None, actor_type: str = "system") -> EventMetadata:
        return EventMetadata.create(actor_id=actor_id, actor_type=actor_type)

    def _payment_events(self, record: PaymentRecord) -> list[DomainEvent]:
        meta = self._metadata()
        status = PaymentStatus(record.status)
        if status == PaymentStatus.SUCCEEDED:
            return [
                PaymentSucceeded(
                    metadata=meta,
                    payment_id=record.id,
                    contract_ref=record.contract_ref,
                    provider=record.provider,
                    payee_id=record.payee_id,
                    amount_received_by_payee=record.amount_received_by_payee,
                    currency=record.currency,
                )
            ]
        if status == PaymentStatus.REQUIRES_CAPTURE:
            return [
                PaymentAuthorized(
                    metadata=meta,
                    payment_id=record.id,
                    contract_ref=record.contract_ref,
                    provider=record.provider,
                )
            ]
        if status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            return [
                PaymentFailed(
                    metadata=meta,
                    payment_id=record.id,
                    contract_ref=record.contract_ref,
                    provider=record.provider,
                    status=status.value,
                )
            ]
        if status == PaymentStatus.REFUNDED:
            return [
                PaymentRefunded(
                    metadata=meta,
                    payment_id=record.id,
                    contract_ref=record.contract_ref,
                    provider=record.provider,
                    total_payer_amount=record.total_payer_amount,
                )
            ]
        return []

    def _withdrawal_events(self, record: PaymentRecord) -> list[DomainEvent]:
        meta = self._metadata()
        if record.status == PaymentStatus.SUCCEEDED.value:
            return [
                WithdrawalCompleted(
                    metadata=meta,
                    withdrawal_id=record.id,
                    user_id=record.payee_id,
                    provider=record.provider,
                    amount=record.amount_received_by_payee,
                )
            ]
        if record.status == PaymentStatus.FAILED.value:
            return [
                WithdrawalFailed(
                    metadata=meta,
                    withdrawal_id=record.id,
                    user_id=record.payee_id,
                    provider=record.provider,
                    amount=record.amount_received_by_payee,
                    error_code=record.last_error_code,
                )
            ]
        return []

    def _emit(self, events: list[DomainEvent]) -> None:
        if events:
            self.emitter.emit_all(events)


__all__ = [
    "Actor",
    "InitiateResult",
    "SettlementEngine",
    "WithdrawalResult",
]
