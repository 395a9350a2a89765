"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Webhook errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"
    UNPARSEABLE_PAYLOAD = "ERR_2002"

    # Store / reward errors (3xxx)
    STORE_NOT_FOUND = "ERR_3001"
    REWARDS_DISABLED = "ERR_3002"
    REWARD_ALREADY_EXISTS = "ERR_3003"
    REWARD_NOT_FOUND = "ERR_3004"
    INVALID_STATUS_TRANSITION = "ERR_3005"

    # Wallet / Cashu errors (4xxx)
    CASHU_PAYMENT_ERROR = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_TOKEN = "ERR_4003"
    MINT_INACTIVE = "ERR_4004"
    CASHU_PLUGIN_ERROR = "ERR_4005"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5001"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5002"
    MINT_UNAVAILABLE = "ERR_5003"
    PAYOUT_UNAVAILABLE = "ERR_5004"


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


class UnparseablePayloadError(ValidationException):
    """Raised when a webhook body cannot be turned into a transaction"""

    def __init__(self, platform: str, reason: str = "Unparseable payload"):
        super().__init__(message=reason, details={"platform": platform})
        self.error_code = ErrorCode.UNPARSEABLE_PAYLOAD


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class WebhookSignatureError(AppException):
    """Raised when an inbound webhook fails HMAC verification"""

    def __init__(self, platform: str):
        super().__init__(
            message="Invalid webhook signature",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=401,
            details={"platform": platform}
        )


class StoreNotFoundError(NotFoundException):
    """Raised when no settings row exists for the store"""

    def __init__(self, store_id: str):
        super().__init__(
            resource="Store",
            identifier=store_id,
            error_code=ErrorCode.STORE_NOT_FOUND
        )


class RewardsDisabledError(AppException):
    """Raised when rewards are switched off for the store or platform"""

    def __init__(self, store_id: str, platform: str | None = None):
        message = f"Rewards are disabled for store {store_id}"
        if platform:
            message += f" on platform {platform}"
        super().__init__(
            message=message,
            error_code=ErrorCode.REWARDS_DISABLED,
            status_code=400,
            details={"store_id": store_id, "platform": platform}
        )


class RewardAlreadyExistsError(AppException):
    """Raised when a reward record with the same id is created twice"""

    def __init__(self, reward_id: str):
        super().__init__(
            message=f"Reward already exists: {reward_id}",
            error_code=ErrorCode.REWARD_ALREADY_EXISTS,
            status_code=409,
            details={"reward_id": reward_id}
        )


class InvalidStatusTransitionError(AppException):
    """Raised when a reward status would move backwards or leave a terminal state"""

    def __init__(self, reward_id: str, current_status: str, target_status: str):
        super().__init__(
            message=f"Invalid transition from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.INVALID_STATUS_TRANSITION,
            status_code=409,
            details={
                "reward_id": reward_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class CashuPaymentError(AppException):
    """
    User-caused wallet failure: bad token, inactive mint, not enough
    funds, or a definite rejection by the mint.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CASHU_PAYMENT_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class InsufficientBalanceError(CashuPaymentError):
    """Raised when the unspent proofs cannot cover the requested amount"""

    def __init__(self, required_amount: int, available_amount: int, unit: str = "sat"):
        super().__init__(
            message=f"Insufficient balance: required {required_amount} {unit}, available {available_amount} {unit}",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            details={
                "required_amount": required_amount,
                "available_amount": available_amount,
                "unit": unit,
            }
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

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ExternalServiceException":
        """
        בניית שגיאה מתוך HTTP response בצורה עקבית.

        Args:
            service_name: שם השירות (btcpay, square, shopify ...)
            operation: שם הפעולה (לדוגמה: create_pull_payment)
            response: אובייקט response (למשל httpx.Response)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=f"{service_name} {operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class CashuPluginError(ExternalServiceException):
    """Infrastructure failure while talking to a mint (routes through the journal)"""

    def __init__(
        self,
        message: str,
        mint_url: str = "",
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.CASHU_PLUGIN_ERROR
    ):
        super().__init__(
            service_name="cashu-mint",
            message=message,
            error_code=error_code,
            details=details
        )
        if mint_url:
            self.details["mint_url"] = mint_url


class MintUnavailableError(CashuPluginError):
    """Raised when the mint cannot be reached or answers with a server error"""

    def __init__(self, mint_url: str, reason: str):
        super().__init__(
            message=f"Mint {mint_url} unavailable: {reason}",
            mint_url=mint_url,
            details={"reason": reason},
            error_code=ErrorCode.MINT_UNAVAILABLE
        )


class PayoutUnavailableError(ExternalServiceException):
    """Raised when a funding source cannot produce a payout right now"""

    def __init__(self, funding_source: str, reason: str):
        super().__init__(
            service_name=f"payout:{funding_source}",
            message=f"Funding source '{funding_source}' unavailable: {reason}",
            error_code=ErrorCode.PAYOUT_UNAVAILABLE,
            details={"funding_source": funding_source, "reason": reason}
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
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
