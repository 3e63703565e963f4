from fastapi import HTTPException, status
from typing import Optional, Dict, Any

class BaseAPIException(HTTPException):
    """Base exception for API errors"""
    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": error_code,
                    "message": message,
                    "details": self.details
                }
            }
        )

    def __str__(self) -> str:  # Ensure str(e) returns the human message
        return self.message

class AuthorizationError(BaseAPIException):
    """Authorization related errors"""
    def __init__(self, message: str = "Access forbidden", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="AUTH_002",
            message=message,
            details=details
        )

class ValidationError(BaseAPIException):
    """Validation errors"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_001",
            message=message,
            details=details
        )

class NotFoundError(BaseAPIException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND_001",
            message=message,
            details=details
        )

class ConflictError(BaseAPIException):
    """Resource conflict errors"""
    def __init__(self, message: str = "Resource conflict", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="CONFLICT_001",
            message=message,
            details=details
        )

class InternalServerError(BaseAPIException):
    """Internal server errors"""
    def __init__(self, message: str = "Internal server error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_001",
            message=message,
            details=details
        )


# ---------------------------------------------------------------------------
# Settlement errors
# ---------------------------------------------------------------------------

class SettlementError(BaseAPIException):
    """Base class for challenge settlement failures.

    ``retryable`` tells callers whether repeating the same request may succeed
    without any change on their side.
    """
    retryable: bool = False

    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict] = None,
    ):
        super().__init__(
            status_code=status_code,
            error_code=error_code,
            message=message,
            details={**(details or {}), "retryable": self.retryable},
        )

class InsufficientFunds(SettlementError):
    """Wallet balance is below the requested debit"""
    def __init__(self, message: str = "Insufficient balance", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="BALANCE_001",
            message=message,
            details=details
        )

class InvalidTransition(SettlementError):
    """Operation is not legal from the challenge's current status"""
    def __init__(self, message: str = "Invalid challenge state transition", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="STATE_001",
            message=message,
            details=details
        )

class DuplicateSubmission(SettlementError):
    """Same participant submitted the same kind of evidence twice"""
    def __init__(self, message: str = "Submission already received", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="SUBMISSION_001",
            message=message,
            details=details
        )

class WinnerUnresolved(SettlementError):
    """Canonical winner cannot be mapped to a participant wallet"""
    def __init__(
        self,
        message: str = "Unable to resolve winner for reward distribution. Please contact support.",
        details: Optional[Dict] = None,
    ):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="SETTLEMENT_001",
            message=message,
            details=details
        )

class VerificationUnavailable(SettlementError):
    """Verification service failed or timed out"""
    retryable = True

    def __init__(self, message: str = "Verification service unavailable", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="VERIFICATION_001",
            message=message,
            details=details
        )

class AlreadySettled(SettlementError):
    """Escrow for this challenge has already been released"""
    def __init__(self, message: str = "Challenge already settled", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="SETTLEMENT_002",
            message=message,
            details=details
        )

class PaymentGatewayError(SettlementError):
    """Payment gateway rejected or failed the request"""
    retryable = True

    def __init__(self, message: str = "Payment gateway error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="PAYMENT_001",
            message=message,
            details=details
        )
