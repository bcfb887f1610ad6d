"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Business rejections (invalid transition, out-of-order event) are result codes,
not exceptions — only caller-visible failures live here.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    INVALID_PAYLOAD = "ERR_1007"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_STATE_INVALID = "ERR_2002"
    CHECKOUT_CONFLICT = "ERR_2003"
    PAYMENT_ATTEMPTS_EXHAUSTED = "ERR_2004"
    REFUND_NOT_ALLOWED = "ERR_2005"
    CANCEL_NOT_ALLOWED = "ERR_2006"
    PAYMENT_OPERATION_IN_PROGRESS = "ERR_2007"

    # Inventory errors (3xxx)
    INSUFFICIENT_STOCK = "ERR_3001"
    INVALID_QUANTITY = "ERR_3002"

    # Janitor errors (4xxx)
    JANITOR_MODE_MISMATCH = "ERR_4001"

    # External service errors (5xxx)
    PSP_UNAVAILABLE = "ERR_5001"
    PSP_INVOICE_PERSIST_FAILED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


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


class InvalidPayloadError(AppException):
    """Webhook payload that can never be applied (missing invoiceId/status)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_PAYLOAD,
            status_code=400,
            details=details
        )


class OrderException(AppException):
    """Base exception for order-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        order_id: str | None = None,
        status_code: int = 409,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if order_id:
            self.details["order_id"] = order_id


class OrderNotFoundError(OrderException):
    """Raised when order is not found"""

    def __init__(self, order_id: str):
        super().__init__(
            message=f"Order not found: {order_id}",
            error_code=ErrorCode.ORDER_NOT_FOUND,
            order_id=order_id,
            status_code=404,
        )


class OrderStateInvalidError(OrderException):
    """Raised when the order is not in a state that allows the operation"""

    def __init__(
        self,
        order_id: str,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.ORDER_STATE_INVALID,
            order_id=order_id,
            details=details,
        )


class CheckoutConflictError(OrderException):
    """Another payment attempt for the order is still being created"""

    def __init__(self, order_id: str, attempt_id: str | None = None):
        super().__init__(
            message=f"Payment attempt for order {order_id} is already in progress",
            error_code=ErrorCode.CHECKOUT_CONFLICT,
            order_id=order_id,
            details={"attempt_id": attempt_id} if attempt_id else None,
        )


class PaymentAttemptsExhaustedError(OrderException):
    """Raised when the order used all allowed payment attempts"""

    def __init__(self, order_id: str, max_attempts: int):
        super().__init__(
            message=f"Payment attempts exhausted for order {order_id}",
            error_code=ErrorCode.PAYMENT_ATTEMPTS_EXHAUSTED,
            order_id=order_id,
            details={"max_attempts": max_attempts},
        )


class PaymentOperationRejectedError(OrderException):
    """
    Admin refund / cancel-payment cannot run for the order.

    ``reason`` is a stable machine code (REFUND_ORDER_NOT_PAID, CANCEL_NOT_ALLOWED, ...).
    """

    def __init__(
        self,
        order_id: str,
        reason: str,
        message: str,
        error_code: ErrorCode = ErrorCode.REFUND_NOT_ALLOWED,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            order_id=order_id,
            details={"reason": reason},
        )
        self.reason = reason


class InsufficientStockError(AppException):
    """Raised when a reserve cannot be satisfied"""

    def __init__(self, product_id: str, requested: int):
        super().__init__(
            message=f"Insufficient stock for product {product_id}",
            error_code=ErrorCode.INSUFFICIENT_STOCK,
            status_code=409,
            details={"product_id": product_id, "requested": requested}
        )


class JanitorModeError(AppException):
    """Raised when a janitor job is incompatible with the current webhook mode"""

    def __init__(self, job: str, required_mode: str, current_mode: str):
        super().__init__(
            message=f"Janitor job {job} requires WEBHOOK_MODE={required_mode}",
            error_code=ErrorCode.JANITOR_MODE_MISMATCH,
            status_code=409,
            details={"job": job, "required_mode": required_mode, "current_mode": current_mode}
        )


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


class PspError(ExternalServiceException):
    """
    Raised when the payment provider API fails.

    ``psp_code`` is the provider-level classification stored on the attempt:
    PSP_TIMEOUT, PSP_BAD_REQUEST, PSP_AUTH_FAILED, PSP_UNKNOWN.
    """

    transient = True

    def __init__(
        self,
        psp_code: str,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
    ):
        super().__init__(
            service_name="psp",
            message=message,
            error_code=error_code,
            details=details
        )
        self.psp_code = psp_code
        self.details["psp_code"] = psp_code
        # 4xx מהספק לא ישתפר בניסיון חוזר
        if psp_code in ("PSP_BAD_REQUEST", "PSP_AUTH_FAILED"):
            self.transient = False

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 300
    ) -> "PspError":
        """
        יצירת PspError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (invoice/create, invoice/cancel, pubkey)
            response: אובייקט httpx.Response
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        if status_code in (401, 403):
            psp_code = "PSP_AUTH_FAILED"
        elif status_code is not None and 400 <= status_code < 500:
            psp_code = "PSP_BAD_REQUEST"
        else:
            psp_code = "PSP_UNKNOWN"
        return cls(
            psp_code=psp_code,
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class PspTimeoutError(PspError):
    """Raised when the payment provider does not answer within the fixed timeout"""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            psp_code="PSP_TIMEOUT",
            message=f"psp {operation} timed out after {timeout_seconds}s",
            details={"operation": operation, "timeout_seconds": timeout_seconds},
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
        )


class PspUnavailableError(ExternalServiceException):
    """Remote invoice could not be created; the order was canceled"""

    def __init__(self, order_id: str, psp_code: str | None = None):
        super().__init__(
            service_name="psp",
            message=f"Payment provider unavailable for order {order_id}",
            error_code=ErrorCode.PSP_UNAVAILABLE,
            details={"order_id": order_id, "psp_code": psp_code}
        )


class PspInvoicePersistError(ExternalServiceException):
    """
    Remote invoice was created but could not be persisted.

    Terminal: compensation (remote cancel, attempt failed, order canceled,
    inventory released) already ran; callers must not retry.
    """

    def __init__(self, order_id: str, attempt_id: str, invoice_id: str):
        super().__init__(
            service_name="psp",
            message=f"Invoice {invoice_id} could not be persisted for order {order_id}",
            error_code=ErrorCode.PSP_INVOICE_PERSIST_FAILED,
            details={"order_id": order_id, "attempt_id": attempt_id, "invoice_id": invoice_id}
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
