"""
ISP Billing Core
================

Billing cycle engine for ISP subscriber accounts.

This package provides:
- Monthly and hourly charge passes with per-period idempotency
- Auto-block policy and low-balance notifications
- Device provisioning commands on block/unblock
- SQLAlchemy ledger storage
- FastAPI endpoints
"""

__version__ = "1.0.0"
