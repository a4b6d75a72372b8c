"""
Run record: one execution of the NB protocol for a company.

After the row is created as queued, every status write goes through
Run.transition_to(), which enforces config.RUN_TRANSITIONS. The job queue,
the orchestrator and cleanup all call it; none of them assign `status`
directly.
"""
from sqlalchemy import Column, Integer, Text, Float, DateTime, JSON, ForeignKey

from customer_intel.config import NB_CODES, RUN_STATUSES, RUN_TRANSITIONS
from customer_intel.database import Base, utcnow
from customer_intel.errors import InvalidStatusTransition


class Run(Base):
    __tablename__ = 'runs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    target_company_id = Column(Integer, ForeignKey('companies.id'), nullable=True)
    user_id = Column(Text, nullable=True)
    mode = Column(Text, nullable=False, default='full')
    status = Column(Text, nullable=False, default='queued', index=True)
    nb_codes = Column(JSON, nullable=True)
    options = Column(JSON, nullable=True)
    estimated_tokens = Column(Integer, nullable=True)
    estimated_cost = Column(Float, nullable=True)
    actual_tokens = Column(Integer, default=0)
    actual_cost = Column(Float, default=0.0)
    reused_snapshot_id = Column(Integer, nullable=True)
    reused_target_snapshot_id = Column(Integer, nullable=True)
    error = Column(JSON, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def step_codes(self):
        """Step codes this run executes, in protocol order."""
        if not self.nb_codes:
            return list(NB_CODES)
        wanted = set(self.nb_codes)
        return [code for code in NB_CODES if code in wanted]

    def to_dict(self):
        return {
            'id': self.id,
            'company_id': self.company_id,
            'target_company_id': self.target_company_id,
            'user_id': self.user_id,
            'mode': self.mode,
            'status': self.status,
            'nb_codes': self.step_codes,
            'estimated_tokens': self.estimated_tokens,
            'estimated_cost': self.estimated_cost,
            'actual_tokens': self.actual_tokens or 0,
            'actual_cost': self.actual_cost or 0.0,
            'reused_snapshot_id': self.reused_snapshot_id,
            'reused_target_snapshot_id': self.reused_target_snapshot_id,
            'error': self.error,
            'retry_count': self.retry_count or 0,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    def transition_to(self, new_status, error=None):
        """
        Move to new_status, stamping lifecycle timestamps.

        Raises InvalidStatusTransition for moves outside RUN_TRANSITIONS;
        writing the current status again is allowed (e.g. a second retry).
        """
        if new_status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {new_status}")
        current = self.status or 'queued'
        if new_status != current and new_status not in RUN_TRANSITIONS.get(current, ()):
            raise InvalidStatusTransition(self.id, current, new_status)

        now = utcnow()
        self.status = new_status
        if new_status == 'running' and self.started_at is None:
            self.started_at = now
        if new_status in ('completed', 'failed', 'cancelled'):
            self.completed_at = now
        if error is not None:
            self.error = dict(error, status=new_status, timestamp=error.get('timestamp') or now.isoformat())
