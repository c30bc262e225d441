"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the bot.
Every exception raised while handling a conversation event is caught at the
controller boundary and turned into a user-visible notice.
"""
import json
from decimal import Decimal
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"

    # Payments API errors (4xxx)
    REMOTE_API_ERROR = "ERR_4000"
    DUPLICATE_RECIPIENT = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    MISSING_DEFAULT_ACCOUNT = "ERR_4004"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    NOTIFICATION_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    SESSION_EXPIRED = "ERR_6002"
    INVALID_STATE = "ERR_6003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


# ============================================================================
# Payments API
# ============================================================================


class RemoteApiError(AppException):
    """
    Failure reported by the payments API.

    The controller only ever looks at ``message`` and ``status_code``.
    4xx responses arrive as this class; 5xx, timeouts and network failures
    arrive as ``RemoteTransportError``.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.REMOTE_API_ERROR,
            status_code=status_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "RemoteApiError":
        """
        Build the matching error from an HTTP response.

        Copperx puts the human readable reason in ``message``, which may be a
        string or a nested object.
        """
        status_code = getattr(response, "status_code", 500) or 500
        response_text = getattr(response, "text", "") or ""
        message = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            raw = body.get("message") or body.get("error")
            if isinstance(raw, str):
                message = raw
            elif raw is not None:
                message = json.dumps(raw, ensure_ascii=False)

        details = {
            "operation": operation,
            "response_text": response_text[:max_response_chars],
        }
        if status_code >= 500:
            return RemoteTransportError(
                message=message or "An unexpected error occurred",
                status_code=status_code,
                details=details,
            )
        return cls(
            message=message or f"{operation} returned status {status_code}",
            status_code=status_code,
            details=details,
        )


class RemoteTransportError(RemoteApiError):
    """Raised on 5xx responses, timeouts, network errors and an open circuit"""


# ============================================================================
# Conversation flow
# ============================================================================


class SessionExpiredError(AppException):
    """Raised when a flow step runs without the scratch data it needs"""

    def __init__(self, entry_command: str, missing: str | None = None):
        super().__init__(
            message=f"Session expired. Please start over with /{entry_command}",
            error_code=ErrorCode.SESSION_EXPIRED,
            status_code=409,
            details={"entry_command": entry_command, "missing": missing}
        )
        self.entry_command = entry_command


class BusinessRuleError(AppException):
    """Base exception for checks that run before any remote mutation"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )


class DuplicateRecipientError(BusinessRuleError):
    """Raised when a bulk transfer names the same recipient twice"""

    def __init__(self, recipients: list[str]):
        super().__init__(
            message="Duplicate recipients: " + ", ".join(recipients),
            error_code=ErrorCode.DUPLICATE_RECIPIENT,
            details={"recipients": recipients}
        )
        self.recipients = recipients


class InsufficientBalanceError(BusinessRuleError):
    """Raised when a bulk transfer total exceeds the available balance"""

    def __init__(self, currency: str, available: Decimal, required: Decimal):
        super().__init__(
            message=f"Insufficient balance: {available} {currency} available, {required} {currency} required",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            details={
                "currency": currency,
                "available": str(available),
                "required": str(required),
            }
        )
        self.currency = currency
        self.available = available
        self.required = required


class MissingDefaultAccountError(BusinessRuleError):
    """Raised when a withdrawal has no default wallet or bank account"""

    def __init__(self, account_kind: str):
        super().__init__(
            message=f"No default {account_kind} found",
            error_code=ErrorCode.MISSING_DEFAULT_ACCOUNT,
            details={"account_kind": account_kind}
        )
        self.account_kind = account_kind


# ============================================================================
# External services
# ============================================================================


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TelegramError":
        """
        Build a TelegramError from an HTTP response.

        Args:
            operation: Bot API method (sendMessage, deleteMessage, ...)
            response: response object (e.g. httpx.Response)
            message: custom message (built from the status when omitted)
            max_response_chars: cap on the stored response text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class TelegramUnavailableError(TelegramError):
    """Telegram answered 5xx or 429; a 4xx for one chat says nothing about the service"""


class NotificationChannelError(ExternalServiceException):
    """Raised when the deposit notification channel cannot be opened"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="pusher",
            message=f"Notification channel error: {message}",
            error_code=ErrorCode.NOTIFICATION_ERROR,
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ============================================================================
# State machine
# ============================================================================


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when state transition is not allowed"""

    def __init__(
        self,
        current_state: str,
        target_state: str,
        conversation_id: int | str | None = None,
        reason: str | None = None
    ):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "conversation_id": conversation_id,
                "reason": reason,
            }
        )
