"""
Company under research — the subject (or comparison target) of a run.
"""
from sqlalchemy import Column, Integer, Text, DateTime
from sqlalchemy.sql import func

from customer_intel.database import Base


class Company(Base):
    __tablename__ = 'companies'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    ticker = Column(Text, nullable=True)
    website = Column(Text, nullable=True)
    sector = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    def to_context(self):
        """Normalized company block used in prompts and snapshots."""
        return {
            'id': self.id,
            'name': self.name,
            'ticker': self.ticker or '',
            'website': self.website or '',
            'sector': self.sector or '',
        }
