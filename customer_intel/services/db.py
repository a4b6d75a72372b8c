"""
Persistent store handle — injected into every component.

Wraps a session factory so tests (and workers) can hand each component the
same in-memory or Postgres-backed sessions without ambient global state.
"""
import logging
from contextlib import contextmanager

from customer_intel.errors import RunNotFound
from customer_intel.models.company import Company
from customer_intel.models.run import Run

logger = logging.getLogger('services.db')


class Store:
    """Session factory wrapper with a transactional scope."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from customer_intel.database import get_session
            session_factory = get_session
        self._session_factory = session_factory

    def session(self):
        """Return a raw session; the caller owns commit/close."""
        return self._session_factory()

    @contextmanager
    def session_scope(self):
        """
        Transactional scope: commit on success, rollback on any exception.

        A rolled-back scope leaves zero partial rows behind.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.error("Transaction rolled back", exc_info=True)
            raise
        finally:
            session.close()

    # ── Shared lookups ───────────────────────────────────────────────────

    @staticmethod
    def get_run(session, run_id) -> Run:
        run = session.get(Run, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def load_run(self, run_id) -> dict:
        """Detached dict view of a run."""
        session = self.session()
        try:
            return self.get_run(session, run_id).to_dict()
        finally:
            session.close()

    def company_context(self, company_id) -> dict:
        """Normalized company block, or a stub when the company row is missing."""
        if company_id is None:
            return {}
        session = self.session()
        try:
            company = session.get(Company, company_id)
            if company is None:
                return {'id': company_id, 'name': f'Company {company_id}',
                        'ticker': '', 'website': '', 'sector': ''}
            return company.to_context()
        finally:
            session.close()
