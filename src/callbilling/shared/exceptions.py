"""
Custom exceptions for the billing service.
"""


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, code: str = "APP_ERROR") -> None:
        """Initialize error.

        Args:
            message: Error message.
            code: Error code.
        """
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(AppError):
    """Validation error with field-level details."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: str | None = None,
        details: list[dict[str, str]] | None = None,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Field that failed validation.
            details: List of validation error details.
        """
        super().__init__(message, "VALIDATION_ERROR")
        self.field = field
        self.details = details or []


class NotFoundError(AppError):
    """Resource not found."""

    def __init__(self, message: str = "Resource not found") -> None:
        """Initialize error."""
        super().__init__(message, "NOT_FOUND")


class CallEventNormalizationError(ValidationError):
    """An external call payload cannot be mapped onto a CallEvent."""


class TransientBillingError(AppError):
    """Reading call events or assignments failed or timed out.

    The current cycle is aborted; the next tick retries.
    """

    def __init__(self, message: str = "Transient billing failure") -> None:
        """Initialize error."""
        super().__init__(message, "TRANSIENT_BILLING_ERROR")


class LedgerWriteError(AppError):
    """A ledger write failed and its balance delta was rolled back. Safe to retry."""

    def __init__(self, user_id: str, message: str = "Ledger write failed") -> None:
        """Initialize error."""
        self.user_id = user_id
        super().__init__(message, "LEDGER_WRITE_ERROR")


class LedgerInconsistencyError(AppError):
    """The compensating rollback of a balance delta failed.

    The balance may no longer match the transaction log. Must never be retried
    automatically: a retry may deduct twice.
    """

    def __init__(
        self,
        user_id: str,
        message: str = "Ledger inconsistency",
        call_id_ref: str | None = None,
    ) -> None:
        """Initialize error."""
        self.user_id = user_id
        self.call_id_ref = call_id_ref
        super().__init__(message, "LEDGER_INCONSISTENCY")


class AgentResolutionError(AppError):
    """No billing agent/rate could be resolved for a call; the call is held."""

    def __init__(self, call_id: str, reason: str) -> None:
        """Initialize error."""
        self.call_id = call_id
        self.reason = reason
        super().__init__(f"Call {call_id} held: {reason}", "AGENT_UNRESOLVED")


class CallNotBillableError(AppError):
    """The call has not finished, or has no duration to bill yet."""

    def __init__(self, call_id: str, call_status: str) -> None:
        """Initialize error."""
        self.call_id = call_id
        self.call_status = call_status
        super().__init__(
            f"Call {call_id} is not billable yet (status: {call_status})",
            "CALL_NOT_BILLABLE",
        )
