"""
API Base Types Module

This module provides error codes, API exceptions and the mapping from
billing errors to HTTP responses.
"""

import secrets
import time
from enum import Enum
from typing import Any, Dict, Optional

from ..billing.base import (
    AccountNotFoundError,
    BillingError,
    ConfigurationError,
    InvalidPeriodError,
    PolicyViolationError,
    StorageError,
)


class ErrorCode(str, Enum):
    """API error codes."""

    # Validation errors
    VALIDATION_ERROR = "VAL_2001"
    INVALID_PERIOD = "VAL_2006"

    # Resource errors
    RESOURCE_NOT_FOUND = "RES_3001"

    # Server errors
    INTERNAL_ERROR = "SRV_5001"
    STORAGE_FAILURE = "SRV_5005"

    # Business logic errors
    OPERATION_NOT_ALLOWED = "BIZ_6002"
    CONFIGURATION_ERROR = "BIZ_6005"


class APIException(Exception):
    """Base exception for API errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[Any] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        """Error response body."""
        return {
            "error": self.message,
            "code": self.code.value,
            "details": self.details,
            "request_id": request_id,
        }


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            code=ErrorCode.RESOURCE_NOT_FOUND,
            message=f"{resource_type} with ID '{resource_id}' not found",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationError(APIException):
    """Validation failure."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.VALIDATION_ERROR):
        super().__init__(code=code, message=message, status_code=400)


class ConflictError(APIException):
    """Operation conflicts with the current resource state."""

    def __init__(self, message: str):
        super().__init__(
            code=ErrorCode.OPERATION_NOT_ALLOWED,
            message=message,
            status_code=409,
        )


class ServiceError(APIException):
    """Internal service error."""

    def __init__(
        self,
        message: str = "Internal server error",
        details: Optional[Any] = None,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    ):
        super().__init__(code=code, message=message, status_code=500, details=details)


def from_billing_error(exc: BillingError) -> APIException:
    """Map a billing error to its HTTP representation."""
    if isinstance(exc, AccountNotFoundError):
        return NotFoundError("Account", exc.account_id)
    if isinstance(exc, InvalidPeriodError):
        return ValidationError(exc.message, ErrorCode.INVALID_PERIOD)
    if isinstance(exc, PolicyViolationError):
        return ConflictError(exc.message)
    if isinstance(exc, ConfigurationError):
        return APIException(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=exc.message,
            status_code=422,
        )
    if isinstance(exc, StorageError):
        return ServiceError(
            "Billing processing failed",
            details=exc.message,
            code=ErrorCode.STORAGE_FAILURE,
        )
    return ServiceError("Billing processing failed", details=exc.message)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(8)
    return f"req_{timestamp}_{random_part}"
