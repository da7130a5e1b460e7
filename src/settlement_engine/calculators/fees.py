"""Platform fee and tax calculation.

Fees are charged to the payer on top of the service amount; the payee always
receives the full service amount. Each intermediate value is rounded half-up
to a whole minor unit before it feeds the next formula:

    application_fee = round(service × fee_percent) + fixed_fee
    provider_tax    = round((service + application_fee) × tax_percent)
    total_payer     = service + application_fee + provider_tax
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from settlement_engine.config import FeeSchedule
from settlement_engine.errors import InvalidAmountError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    """Derived money fields for one payment, in minor units."""

    service_amount: int
    application_fee_amount: int
    provider_tax_amount: int
    total_payer_amount: int
    amount_received_by_payee: int

    @property
    def platform_amount(self) -> int:
        """Amount retained by the platform (fee plus tax)."""
        return self.application_fee_amount + self.provider_tax_amount


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class FeeCalculator:
    """Pure calculator for a fixed fee schedule."""

    def __init__(self, schedule: FeeSchedule | None = None):
        self.schedule = schedule or FeeSchedule()

    def calculate(self, service_amount: int) -> FeeBreakdown:
        """Compute the fee breakdown for a service amount.

        Raises:
            InvalidAmountError: If service_amount is not a positive integer.
        """
        if isinstance(service_amount, bool) or not isinstance(service_amount, int):
            raise InvalidAmountError("Service amount must be an integer number of minor units")
        if service_amount <= 0:
            raise InvalidAmountError("Service amount must be greater than 0")

        s = self.schedule
        fee = _round_minor(Decimal(service_amount) * s.fee_percent) + s.fixed_fee_minor_units
        tax = _round_minor(Decimal(service_amount + fee) * s.tax_percent)

        if fee >= service_amount:
            logger.warning(
                "Application fee %d is not below service amount %d", fee, service_amount
            )

        return FeeBreakdown(
            service_amount=service_amount,
            application_fee_amount=fee,
            provider_tax_amount=tax,
            total_payer_amount=service_amount + fee + tax,
            amount_received_by_payee=service_amount,
        )

    @staticmethod
    def withdrawal(amount: int) -> FeeBreakdown:
        """Breakdown for a withdrawal: the amount itself, no fee or tax."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError("Withdrawal amount must be greater than 0")
        return FeeBreakdown(
            service_amount=amount,
            application_fee_amount=0,
            provider_tax_amount=0,
            total_payer_amount=amount,
            amount_received_by_payee=amount,
        )


def calculate_fees(service_amount: int, schedule: FeeSchedule | None = None) -> FeeBreakdown:
    """Module-level convenience wrapper around FeeCalculator."""
    return FeeCalculator(schedule).calculate(service_amount)
