"""
Timestamped metric record used for cost, duration and diagnostic auditing.
"""
from sqlalchemy import Column, Integer, Text, Float, DateTime, JSON, ForeignKey

from customer_intel.database import Base, utcnow


class Telemetry(Base):
    __tablename__ = 'telemetry'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey('runs.id'), nullable=True, index=True)
    metric_key = Column(Text, nullable=False, index=True)
    metric_value = Column(Float, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
