"""
REST API Module

FastAPI surface for the billing cycle engine.

Features:
- Pass triggers and dry runs
- Manual credit, debit, block and unblock
- Scheduler control
- Billing reports
"""

from .app import AppConfig, create_app, run_server
from .base import (
    APIException,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ServiceError,
    ValidationError,
    from_billing_error,
)

__all__ = [
    "AppConfig",
    "create_app",
    "run_server",
    "APIException",
    "ConflictError",
    "ErrorCode",
    "NotFoundError",
    "ServiceError",
    "ValidationError",
    "from_billing_error",
]
