"""
Database Module

SQLAlchemy persistence for the billing ledger and the boundary outbox.
"""

from .base import (
    Base,
    DatabaseManager,
    close_database,
    get_database,
    init_database,
)
from .ledger import SQLAlchemyLedgerStore
from .outbox import OutboxCommandChannel, OutboxNotificationSender

__all__ = [
    "Base",
    "DatabaseManager",
    "close_database",
    "get_database",
    "init_database",
    "SQLAlchemyLedgerStore",
    "OutboxCommandChannel",
    "OutboxNotificationSender",
]
