"""Payment record state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from settlement_engine.errors import ConflictError


class PaymentStatus(str, Enum):
    """Payment record status values."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELED = "canceled"


class InvalidTransitionError(ConflictError):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = _value(from_status)
        self.to_status = _value(to_status)
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


def _value(status: str) -> str:
    return status.value if isinstance(status, PaymentStatus) else status


class PaymentStateMachine:
    """State machine for payment record status transitions.

    Forward transitions (acyclic):
    - requires_payment_method → processing | requires_capture | succeeded | failed | canceled
    - processing → requires_capture | succeeded | failed | canceled
    - requires_capture → succeeded (escrow release) | refund_pending | canceled
    - succeeded → refund_pending
    - refund_pending → refunded

    failed and canceled may additionally be reopened to requires_payment_method
    by a new initiation. Reopen edges are not part of the forward graph, so
    webhook reconciliation can never move a record backwards.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.REQUIRES_PAYMENT_METHOD: [
            PaymentStatus.PROCESSING,
            PaymentStatus.REQUIRES_CAPTURE,
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.PROCESSING: [
            PaymentStatus.REQUIRES_CAPTURE,
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.REQUIRES_CAPTURE: [
            PaymentStatus.SUCCEEDED,
            PaymentStatus.REFUND_PENDING,
            PaymentStatus.CANCELED,
        ],
        PaymentStatus.SUCCEEDED: [PaymentStatus.REFUND_PENDING],
        PaymentStatus.REFUND_PENDING: [PaymentStatus.REFUNDED],
        PaymentStatus.REFUNDED: [],  # Terminal
        PaymentStatus.FAILED: [],  # Terminal (reopenable)
        PaymentStatus.CANCELED: [],  # Terminal (reopenable)
    }

    REOPENABLE = {PaymentStatus.FAILED, PaymentStatus.CANCELED}

    TERMINAL = {PaymentStatus.REFUNDED, PaymentStatus.FAILED, PaymentStatus.CANCELED}

    # Statuses from which funds may be returned to the payer
    REFUNDABLE = {PaymentStatus.SUCCEEDED, PaymentStatus.REQUIRES_CAPTURE}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a direct forward transition is valid."""
        from_s = PaymentStatus(from_status)
        to_s = PaymentStatus(to_status)
        return to_s in cls.VALID_TRANSITIONS.get(from_s, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a forward transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            allowed = cls.get_next_statuses(from_status)
            if allowed:
                reason = "allowed: " + ", ".join(s.value for s in allowed)
            else:
                reason = f"'{PaymentStatus(from_status).value}' is terminal"
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def validate_reopen(cls, from_status: str) -> None:
        """Validate reopening a record for a new payment attempt."""
        if PaymentStatus(from_status) not in cls.REOPENABLE:
            raise InvalidTransitionError(
                from_status,
                PaymentStatus.REQUIRES_PAYMENT_METHOD,
                "only failed or canceled records can be reopened",
            )

    @classmethod
    def get_next_statuses(cls, from_status: str) -> list[PaymentStatus]:
        """Get list of valid next statuses."""
        return list(cls.VALID_TRANSITIONS.get(PaymentStatus(from_status), []))

    @classmethod
    def reachable(cls, from_status: str) -> set[PaymentStatus]:
        """All statuses reachable from from_status by forward transitions."""
        seen: set[PaymentStatus] = set()
        frontier = [PaymentStatus(from_status)]
        while frontier:
            current = frontier.pop()
            for nxt in cls.VALID_TRANSITIONS.get(current, []):
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        return seen

    @classmethod
    def path_to(cls, from_status: str, to_status: str) -> list[PaymentStatus] | None:
        """Shortest forward path from from_status to to_status (excluding the start).

        Returns an empty list when the statuses are equal and None when
        to_status is not reachable.
        """
        start = PaymentStatus(from_status)
        target = PaymentStatus(to_status)
        if start == target:
            return []
        if target not in cls.reachable(start):
            return None
        queue: list[list[PaymentStatus]] = [[start]]
        visited = {start}
        while queue:
            path = queue.pop(0)
            for nxt in cls.VALID_TRANSITIONS.get(path[-1], []):
                if nxt in visited:
                    continue
                if nxt == target:
                    return path[1:] + [nxt]
                visited.add(nxt)
                queue.append(path + [nxt])
        return None

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        """Check if status is terminal."""
        return PaymentStatus(status) in cls.TERMINAL
