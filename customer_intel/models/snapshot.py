"""
Immutable point-in-time capture of a run's completed NB results.
"""
from sqlalchemy import Column, Integer, DateTime, JSON, ForeignKey

from customer_intel.database import Base, utcnow


class Snapshot(Base):
    __tablename__ = 'snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    run_id = Column(Integer, ForeignKey('runs.id'), nullable=False, index=True)
    data = Column(JSON, nullable=False)
    size_bytes = Column(Integer, default=0)
    # Set in Python so freshness comparisons use the same clock as the reader
    created_at = Column(DateTime, nullable=False, default=utcnow)
