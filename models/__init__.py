"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (SyncMode, SyncStatus)
    customer_order: Destination table for synced customer orders
    sync_run: Sync run audit trail and incremental watermark

Usage:
    from models import CustomerOrder, SyncRunRecord
    from models.base import SyncMode, SyncStatus
"""

from models.base import Base, SyncMode, SyncStatus
from models.customer_order import CustomerOrder
from models.sync_run import SyncRunRecord

__all__ = [
    "Base",
    "SyncMode",
    "SyncStatus",
    "CustomerOrder",
    "SyncRunRecord",
]
