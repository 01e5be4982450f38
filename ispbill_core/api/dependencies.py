"""
API Dependencies

This module provides FastAPI dependencies for the billing engine and other
shared resources.
"""

from fastapi import Request

from ..billing.engine import BillingEngine
from ..billing.reports import BillingReports


# =============================================================================
# Engine Dependencies
# =============================================================================


def get_engine(request: Request) -> BillingEngine:
    """
    FastAPI dependency for the billing engine.

    The engine is created by the application lifespan and stored on
    `app.state.engine`.
    """
    return request.app.state.engine


def get_reports(request: Request) -> BillingReports:
    """FastAPI dependency for billing reports."""
    return get_engine(request).reports
