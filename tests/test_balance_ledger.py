"""Tests for the balance ledger.

Balances are derived from payment records only: earned from succeeded
payments to the user, minus succeeded and processing withdrawals.
"""

from settlement_engine.database import session_scope
from settlement_engine.models import BalanceGuard
from settlement_engine.services.balance_ledger import BalanceLedger, BalanceSnapshot
from tests.conftest import PAYEE, PAYER


class TestBalanceSnapshot:
    """Snapshot arithmetic."""

    def test_available_subtracts_withdrawals(self):
        snapshot = BalanceSnapshot(
            user_id="u", provider="stripe", currency="cad", earned=1000, withdrawn=300, withdrawing=200
        )
        assert snapshot.available == 500

    def test_pending_is_not_available(self):
        snapshot = BalanceSnapshot(user_id="u", provider="stripe", currency="cad", pending=900)
        assert snapshot.available == 0


class TestBalanceLedger:
    """Balances computed from records."""

    def test_empty_balance(self, session_factory):
        with session_scope(session_factory) as session:
            snapshot = BalanceLedger(session).snapshot(PAYEE, "stripe", "cad")
        assert snapshot == BalanceSnapshot(user_id=PAYEE, provider="stripe", currency="cad")

    def test_unsettled_payment_is_pending(self, engine, stripe_stub):
        result = engine.initiate("contract-1", PAYER, "stripe")
        stripe_stub.simulate_authorize(result.external_ref)
        engine.confirm(result.external_ref)

        balance = engine.balance(PAYEE, "stripe")
        assert balance.pending == 10000
        assert balance.earned == 0
        assert balance.available == 0

    def test_earned_counts_payee_only(self, pay, engine):
        pay()

        assert engine.balance(PAYEE, "stripe").earned == 10000
        assert engine.balance(PAYER, "stripe").earned == 0

    def test_fees_are_not_earned(self, pay, engine):
        pay()
        assert engine.balance(PAYEE, "stripe").earned == 10000

    def test_balance_is_per_currency(self, pay, engine):
        pay()
        assert engine.balance(PAYEE, "stripe", currency="usd").earned == 0

    def test_lock_creates_guard_row_once(self, session_factory):
        with session_scope(session_factory) as session:
            ledger = BalanceLedger(session)
            ledger.lock(PAYEE, "stripe")
            ledger.lock(PAYEE, "stripe")

        with session_scope(session_factory) as session:
            guard = session.get(BalanceGuard, (PAYEE, "stripe"))
            assert guard is not None
            assert guard.version == 2

    def test_all_balances_empty_for_new_user(self, session_factory):
        with session_scope(session_factory) as session:
            assert BalanceLedger(session).all_balances("nobody") == []
