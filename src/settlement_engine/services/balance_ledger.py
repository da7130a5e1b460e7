"""Balance ledger derived from payment records.

Balances are never stored. For a user, provider and currency:

    earned      = Σ amount_received_by_payee of succeeded payments to the user
    withdrawn   = Σ amount of succeeded withdrawals
    withdrawing = Σ amount of processing withdrawals
    pending     = Σ amount_received_by_payee of payments still processing
                  or awaiting capture (not yet available)
    available   = earned - withdrawn - withdrawing

Withdrawal decisions must be made under ``lock()`` so two concurrent
withdrawals cannot both spend the same available balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine.models import BalanceGuard, PaymentRecord
from settlement_engine.models.base import utcnow
from settlement_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceSnapshot:
    """Point-in-time balance of one user with one provider."""

    user_id: str
    provider: str
    currency: str
    earned: int = 0
    withdrawn: int = 0
    withdrawing: int = 0
    pending: int = 0

    @property
    def available(self) -> int:
        """Amount the user may withdraw now."""
        return self.earned - self.withdrawn - self.withdrawing


class BalanceLedger:
    """Computes balances inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def lock(self, user_id: str, provider: str) -> None:
        """Serialize withdrawal decisions for (user, provider).

        Takes a row lock on the balance guard (PostgreSQL) by updating it. On
        SQLite the transaction already holds the database write lock.
        """
        exists = self.session.scalar(
            select(BalanceGuard.version)
            .where(BalanceGuard.user_id == user_id, BalanceGuard.provider == provider)
            .with_for_update()
        )
        if exists is None:
            try:
                with self.session.begin_nested():
                    self.session.add(BalanceGuard(user_id=user_id, provider=provider, version=0))
            except IntegrityError:
                logger.debug("Balance guard for %s/%s created concurrently", user_id, provider)

        self.session.execute(
            update(BalanceGuard)
            .where(BalanceGuard.user_id == user_id, BalanceGuard.provider == provider)
            .values(version=BalanceGuard.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def snapshot(self, user_id: str, provider: str, currency: str) -> BalanceSnapshot:
        """Balance of a user with one provider in one currency."""
        row = self.session.execute(
            self._totals_query(user_id).where(
                PaymentRecord.provider == provider,
                PaymentRecord.currency == currency,
            )
        ).one()
        return BalanceSnapshot(
            user_id=user_id,
            provider=provider,
            currency=currency,
            earned=int(row.earned or 0),
            withdrawn=int(row.withdrawn or 0),
            withdrawing=int(row.withdrawing or 0),
            pending=int(row.pending or 0),
        )

    def all_balances(self, user_id: str) -> list[BalanceSnapshot]:
        """Balances for every (provider, currency) the user has records with."""
        rows = self.session.execute(
            self._totals_query(user_id)
            .add_columns(PaymentRecord.provider, PaymentRecord.currency)
            .group_by(PaymentRecord.provider, PaymentRecord.currency)
            .order_by(PaymentRecord.provider, PaymentRecord.currency)
        ).all()
        return [
            BalanceSnapshot(
                user_id=user_id,
                provider=row.provider,
                currency=row.currency,
                earned=int(row.earned or 0),
                withdrawn=int(row.withdrawn or 0),
                withdrawing=int(row.withdrawing or 0),
                pending=int(row.pending or 0),
            )
            for row in rows
        ]

    @staticmethod
    def _totals_query(user_id: str):
        amount = PaymentRecord.amount_received_by_payee
        is_payment = PaymentRecord.record_type == "payment"
        is_withdrawal = PaymentRecord.record_type == "withdrawal"

        def total(*conditions):
            return func.coalesce(func.sum(case((and_(*conditions), amount), else_=0)), 0)

        return select(
            total(is_payment, PaymentRecord.status == PaymentStatus.SUCCEEDED.value).label("earned"),
            total(is_withdrawal, PaymentRecord.status == PaymentStatus.SUCCEEDED.value).label(
                "withdrawn"
            ),
            total(is_withdrawal, PaymentRecord.status == PaymentStatus.PROCESSING.value).label(
                "withdrawing"
            ),
            total(
                is_payment,
                PaymentRecord.status.in_(
                    [PaymentStatus.PROCESSING.value, PaymentStatus.REQUIRES_CAPTURE.value]
                ),
            ).label("pending"),
        ).where(PaymentRecord.payee_id == user_id)
