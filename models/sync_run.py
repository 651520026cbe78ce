from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, SyncMode, SyncStatus


class SyncRunRecord(Base):
    """
    Audit trail of sync runs.

    Purpose:
    - Incremental sync watermark (start of the latest succeeded run)
    - Performance monitoring and error tracking
    """
    __tablename__ = "sync_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    sync_id = Column(String(64), unique=True, nullable=False, index=True)

    mode = Column(Enum(SyncMode), nullable=False)
    status = Column(Enum(SyncStatus), nullable=False, index=True)
    filters = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Float, nullable=True)

    # Statistics
    records_fetched = Column(Integer, default=0)
    records_written = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    pages_fetched = Column(Integer, default=0)
    pages_failed = Column(Integer, default=0)

    # Error tracking
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_runs_status_started", "status", "started_at"),
    )
