"""
Cached structural diff between two snapshots — one row per ordered pair.
"""
from sqlalchemy import Column, Integer, DateTime, JSON, ForeignKey, UniqueConstraint

from customer_intel.database import Base, utcnow


class Diff(Base):
    __tablename__ = 'diffs'
    __table_args__ = (
        UniqueConstraint('from_snapshot_id', 'to_snapshot_id', name='uq_diffs_pair'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_snapshot_id = Column(Integer, ForeignKey('snapshots.id'), nullable=False)
    to_snapshot_id = Column(Integer, ForeignKey('snapshots.id'), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
