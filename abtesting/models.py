"""SQLAlchemy model for persisted snapshots.

One row per deployment; the row holds the whole snapshot document as JSON.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from sqlalchemy.sql import func
from abtesting.database import Base


class SnapshotRecord(Base):
    """Snapshot model - the serialized experiment state of one deployment"""
    __tablename__ = "ab_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    deployment = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # Snapshot JSON
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # One snapshot per deployment
    __table_args__ = (
        Index('idx_snapshots_deployment', 'deployment', unique=True),
    )
