"""
Research source attached to a company (uploaded file, URL, filing).

Sources are the citation targets: NB payloads cite them by integer id.
"""
from sqlalchemy import Column, Integer, Text, DateTime, ForeignKey
from sqlalchemy.sql import func

from customer_intel.database import Base


class Source(Base):
    __tablename__ = 'sources'

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('companies.id'), nullable=False, index=True)
    type = Column(Text, nullable=False, default='url')
    title = Column(Text, nullable=True)
    url = Column(Text, nullable=True)
    uploaded_filename = Column(Text, nullable=True)
    content_hash = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title or '',
            'url': self.url or '',
            'uploaded_filename': self.uploaded_filename or '',
            'hash': self.content_hash or '',
        }
