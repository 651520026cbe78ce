"""
Pydantic schemas for data validation and serialization.

Schemas:
    customer_order: Sanitized customer order ready for upsert
    sync: Sync run, filters, sort and statistics models
    api: HTTP request/response models

Usage:
    from schemas import CustomerOrderCreate, SyncRun, SyncFilters
"""

from schemas.customer_order import CustomerOrderCreate
from schemas.sync import SyncFilters, SortSpec, SyncRun, SyncStats

__all__ = [
    "CustomerOrderCreate",
    "SyncFilters",
    "SortSpec",
    "SyncRun",
    "SyncStats",
]
