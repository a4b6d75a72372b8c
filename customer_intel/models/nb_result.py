"""
Output of one NB step within a run. Immutable once status is 'completed'.
"""
from sqlalchemy import (
    Column, Integer, Text, Float, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint,
)

from customer_intel.database import Base, utcnow


class NBResult(Base):
    __tablename__ = 'nb_results'
    __table_args__ = (
        UniqueConstraint('run_id', 'nb_code', name='uq_nb_results_run_code'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey('runs.id'), nullable=False, index=True)
    nb_code = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='pending')
    payload = Column(JSON, nullable=True)
    citations = Column(JSON, nullable=True)
    attempts = Column(Integer, default=0)
    repaired = Column(Boolean, default=False)
    reused = Column(Boolean, default=False)
    tokens_used = Column(Integer, default=0)
    duration_ms = Column(Integer, default=0)
    cost = Column(Float, default=0.0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            'payload': self.payload or {},
            'citations': self.citations or [],
            'duration_ms': self.duration_ms or 0,
            'tokens_used': self.tokens_used or 0,
            'status': self.status,
        }
