"""Settlement error taxonomy.

Every error raised by the engine carries a stable machine-readable ``code``,
a human-readable ``message`` and the HTTP status the API layer maps it to.
Provider payloads never appear in messages.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for all settlement errors."""

    code = "SETTLEMENT_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, code: str | None = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "detail": self.message}


class ValidationError(SettlementError):
    """Bad input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidAmountError(ValidationError):
    """Amount is zero, negative, or otherwise unusable."""

    code = "INVALID_AMOUNT"


class InvalidContractStateError(ValidationError):
    """Contract is not in a payable status."""

    code = "INVALID_CONTRACT_STATE"


class AuthorizationError(SettlementError):
    """Wrong actor for the operation."""

    code = "NOT_AUTHORIZED"
    http_status = 403


class NotFoundError(SettlementError):
    code = "NOT_FOUND"
    http_status = 404


class ProviderAccountMissingError(NotFoundError):
    """A party has no connected account with the provider."""

    code = "PROVIDER_ACCOUNT_MISSING"


class ConflictError(SettlementError):
    """Invalid state transition or duplicate intent."""

    code = "CONFLICT"
    http_status = 409


class InvalidStateError(ConflictError):
    code = "INVALID_STATE"


class OperationInFlightError(ConflictError):
    """A provider call for the same record is already outstanding."""

    code = "OPERATION_IN_FLIGHT"


class InsufficientBalanceError(SettlementError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 422

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance. Available: {available}, requested: {requested}"
        )


class ProviderError(SettlementError):
    """Base class for normalized provider failures."""

    code = "PROVIDER_ERROR"
    http_status = 502


class ProviderTransientError(ProviderError):
    """Temporary provider failure (network, timeout, rate limit). Safe to retry."""

    code = "PROVIDER_UNAVAILABLE"
    retryable = True


class ProviderPermanentError(ProviderError):
    """Provider rejected the request. Retrying will not help."""

    code = "PROVIDER_REJECTED"


class AccountInvalidError(ProviderPermanentError):
    """The provider no longer recognizes the connected account."""

    code = "ACCOUNT_INVALID"


class InsufficientProviderFundsError(ProviderPermanentError):
    code = "INSUFFICIENT_PROVIDER_FUNDS"


class PayoutNotAllowedError(ProviderPermanentError):
    code = "PAYOUT_NOT_ALLOWED"


class WebhookSignatureError(SettlementError):
    """Webhook failed authenticity or freshness checks."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    http_status = 401
