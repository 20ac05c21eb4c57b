from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    COURSE_UNAVAILABLE = "COURSE_UNAVAILABLE"
    UNKNOWN_INTENT = "UNKNOWN_INTENT"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    ALREADY_OWNED = "ALREADY_OWNED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    STORAGE_CONFLICT = "STORAGE_CONFLICT"
    CONCURRENCY_ERROR = "CONCURRENCY_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class PaymentError(Exception):
    status_code = 500
    code = ErrorCode.GATEWAY_ERROR

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        return {
            "message": self.message,
            "code": self.code.value,
            "details": self.details,
        }


class ValidationError(PaymentError):
    status_code = 400
    code = ErrorCode.VALIDATION_FAILED


class CourseUnavailable(ValidationError):
    code = ErrorCode.COURSE_UNAVAILABLE


class UnknownIntent(PaymentError):
    status_code = 404
    code = ErrorCode.UNKNOWN_INTENT

    def __init__(self, intent_id: str) -> None:
        super().__init__("Payment intent not found", {"intent_id": intent_id})
        self.intent_id = intent_id


class SignatureInvalid(PaymentError):
    status_code = 400
    code = ErrorCode.SIGNATURE_INVALID


class AmountMismatch(SignatureInvalid):
    """Authentic sender, but the reported amount disagrees with the stored intent."""

    code = ErrorCode.AMOUNT_MISMATCH


class AlreadyOwned(PaymentError):
    status_code = 409
    code = ErrorCode.ALREADY_OWNED


class PermissionDenied(PaymentError):
    status_code = 403
    code = ErrorCode.PERMISSION_DENIED


class StorageConflict(PaymentError):
    status_code = 409
    code = ErrorCode.STORAGE_CONFLICT


class ConcurrencyError(PaymentError):
    status_code = 409
    code = ErrorCode.CONCURRENCY_ERROR


class GatewayError(PaymentError):
    status_code = 502
    code = ErrorCode.GATEWAY_ERROR


class AlreadyTerminal(Exception):
    """Raised by the ledger when a transition finds the intent already settled.

    Not an error: callers treat it as a successful no-op. Carries the
    intent as it was found.
    """

    def __init__(self, intent) -> None:
        super().__init__(f"Intent {intent.id} is already {intent.status.value}")
        self.intent = intent
        self.intent_id = intent.id
        self.status = intent.status.value
