"""Persistence for payment records and their audit trail.

Every state write is a compare-and-swap on ``version``:

    UPDATE payment_record SET ..., version = :v + 1
    WHERE id = :id AND version = :v

Zero rows updated means another writer got there first; callers re-read and
decide again. Status changes append a PaymentTransition row in the same
transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from settlement_engine.models import PaymentRecord, PaymentTransition
from settlement_engine.models.base import utcnow
from settlement_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryPage:
    """One page of a user's payment history."""

    items: list[PaymentRecord]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0


class PaymentRecordStore:
    """Data access for PaymentRecord within one session."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, record_id: UUID) -> PaymentRecord | None:
        return self.session.get(PaymentRecord, record_id, populate_existing=True)

    def get_by_contract(self, contract_ref: str) -> PaymentRecord | None:
        return self.session.scalars(
            select(PaymentRecord)
            .where(PaymentRecord.contract_ref == contract_ref)
            .execution_options(populate_existing=True)
        ).first()

    def get_by_external_ref(
        self, external_ref: str, provider: str | None = None
    ) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(PaymentRecord.external_ref == external_ref)
        if provider is not None:
            stmt = stmt.where(PaymentRecord.provider == provider)
        return self.session.scalars(stmt.execution_options(populate_existing=True)).first()

    def create(
        self,
        record: PaymentRecord,
        *,
        source: str = "api",
        event_id: str | None = None,
    ) -> PaymentRecord:
        """Insert a new record and its initial audit row."""
        record.version = 1
        if record.external_refs is None:
            record.external_refs = {}
        self.session.add(record)
        self.session.flush()
        self._audit(record.id, None, record.status, source, event_id)
        logger.info(
            "Created %s record %s (%s, status=%s)",
            record.record_type,
            record.id,
            record.provider,
            record.status,
        )
        return record

    def compare_and_set(
        self,
        record: PaymentRecord,
        *,
        status: str | None = None,
        path: list[str] | None = None,
        source: str = "system",
        event_id: str | None = None,
        where: Any = None,
        **values: Any,
    ) -> bool:
        """Write values (and optionally a new status) if nobody wrote since ``record`` was read.

        Args:
            record: The record as last read; its version is the expected version.
            status: New status, or None to leave status unchanged. Callers
                validate the transition before calling.
            path: Forward hops from the current status ending at ``status``;
                one audit row is written per hop. Defaults to the single hop.
            source: Audit source of a status change (api, webhook, system).
            event_id: Provider event id recorded on the audit row.
            where: Extra WHERE criterion for the swap.
            **values: Other columns to set.

        Returns:
            True if the write won; the record is refreshed in place. False if
            the version moved; the caller must re-read.
        """
        expected = record.version
        from_status = record.status
        if status is not None:
            values["status"] = PaymentStatus(status).value
        values["version"] = expected + 1
        values["updated_at"] = utcnow()

        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == record.id, PaymentRecord.version == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if where is not None:
            stmt = stmt.where(where)

        result = self.session.execute(stmt)
        if result.rowcount != 1:
            logger.debug("Version conflict on record %s at version %d", record.id, expected)
            return False

        if status is not None and values["status"] != from_status:
            hops = [PaymentStatus(s).value for s in path] if path else [values["status"]]
            previous = from_status
            for hop in hops:
                self._audit(record.id, previous, hop, source, event_id)
                previous = hop
        self.session.refresh(record)
        return True

    def claim_in_flight(self, record: PaymentRecord, operation: str, **values: Any) -> bool:
        """Mark a provider call as outstanding. Fails if one already is."""
        return self.compare_and_set(
            record,
            where=PaymentRecord.in_flight_operation.is_(None),
            in_flight_operation=operation,
            **values,
        )

    def transitions(self, record_id: UUID) -> list[PaymentTransition]:
        return list(
            self.session.scalars(
                select(PaymentTransition)
                .where(PaymentTransition.payment_record_id == record_id)
                .order_by(PaymentTransition.created_at, PaymentTransition.id)
            )
        )

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
        """Records where the user is payer or payee, newest first."""
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)

        criteria = [or_(PaymentRecord.payer_id == user_id, PaymentRecord.payee_id == user_id)]
        if record_type:
            criteria.append(PaymentRecord.record_type == record_type)
        if status:
            criteria.append(PaymentRecord.status == status)
        if provider:
            criteria.append(PaymentRecord.provider == provider)

        total = self.session.scalar(
            select(func.count()).select_from(PaymentRecord).where(*criteria)
        )
        items = list(
            self.session.scalars(
                select(PaymentRecord)
                .where(*criteria)
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        )
        return HistoryPage(items=items, total=total or 0, page=page, page_size=page_size)

    def _audit(
        self,
        record_id: UUID,
        from_status: str | None,
        to_status: str,
        source: str,
        event_id: str | None,
    ) -> None:
        self.session.add(
            PaymentTransition(
                payment_record_id=record_id,
                from_status=from_status,
                to_status=to_status,
                source=source,
                event_id=event_id,
            )
        )
        self.session.flush()
