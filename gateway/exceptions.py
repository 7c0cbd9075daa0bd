"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from gateway.models.api import ErrorCode


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    code: str = "GATEWAY_ERROR"


class AuthenticationError(GatewayError):
    """Raised when a bearer token cannot be verified."""

    code = ErrorCode.UNAUTHORIZED.value

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Authentication failed: {reason}")


class TokenExpiredError(AuthenticationError):
    """The token verified but is past its expiry; the client should refresh it."""

    code = ErrorCode.TOKEN_EXPIRED.value

    def __init__(self) -> None:
        super().__init__("token expired")


class UpstreamError(GatewayError):
    """Raised when the upstream model call fails."""

    code = ErrorCode.UPSTREAM_ERROR.value

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Upstream error: {message}")


class UpstreamRateLimitedError(UpstreamError):
    """Upstream refused the call because of its own rate limits."""

    code = ErrorCode.UPSTREAM_RATE_LIMITED.value


class UpstreamOverloadedError(UpstreamError):
    """Upstream is temporarily overloaded."""

    code = ErrorCode.UPSTREAM_OVERLOADED.value


class LedgerWriteError(GatewayError):
    """Raised when a usage record cannot be persisted."""

    code = "LEDGER_WRITE_FAILED"

    def __init__(self, account_id: UUID, message: str) -> None:
        self.account_id = account_id
        self.message = message
        super().__init__(f"Ledger write failed for {account_id}: {message}")


class CounterStoreUnavailableError(GatewayError):
    """Raised when the shared counter store cannot be reached."""

    code = "COUNTER_STORE_UNAVAILABLE"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Counter store unavailable: {message}")


class RequestValidationFailure(GatewayError):
    """Raised when a stream request violates a size or type constraint."""

    code = ErrorCode.VALIDATION_ERROR.value

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class AccountNotFoundError(GatewayError):
    """Raised when account doesn't exist."""

    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class WriteVerificationError(GatewayError):
    """Raised when database write verification fails."""

    code = "WRITE_VERIFICATION_FAILED"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class BillingReportError(GatewayError):
    """Raised when overage cannot be reported to the billing processor."""

    code = "BILLING_REPORT_FAILED"

    def __init__(self, account_id: UUID, message: str) -> None:
        self.account_id = account_id
        self.message = message
        super().__init__(f"Overage report failed for {account_id}: {message}")
