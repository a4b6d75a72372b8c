"""Shared test fixtures."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from customer_intel.config import NB_CODES
from customer_intel.database import Base, make_engine, utcnow
from customer_intel.pipeline import cost_config
from customer_intel.pipeline.nb_definitions import get_schema
from customer_intel.services.db import Store
from customer_intel.services.mock_llm import MockLLMClient, generate_from_schema


@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine (one per test) with schema created."""
    engine = make_engine(f"sqlite:///{tmp_path / 'intel.db'}")
    import customer_intel.models.company
    import customer_intel.models.source
    import customer_intel.models.run
    import customer_intel.models.nb_result
    import customer_intel.models.snapshot
    import customer_intel.models.diff
    import customer_intel.models.telemetry
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    """Store bound to the test database — injected into every component."""
    return Store(session_factory)


@pytest.fixture(autouse=True)
def _reset_cost_config():
    cost_config.reset_cache()
    yield
    cost_config.reset_cache()


@pytest.fixture
def count_rows(store):
    """count_rows(Model) → number of rows in the model's table."""
    def _count(model):
        session = store.session()
        try:
            return session.scalar(select(func.count()).select_from(model))
        finally:
            session.close()
    return _count


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_llm():
    return MockLLMClient(provider='gpt-4')


@pytest.fixture
def telemetry(store):
    from customer_intel.services.telemetry import TelemetryLogger
    return TelemetryLogger(store)


@pytest.fixture
def versioning(store, telemetry):
    from customer_intel.services.versioning import VersioningService
    return VersioningService(store, telemetry=telemetry)


@pytest.fixture
def cost_service(store, versioning, telemetry):
    from customer_intel.services.cost import CostService
    return CostService(store, versioning=versioning, telemetry=telemetry, provider='gpt-4',
                       warning_threshold=10.0, hard_limit=50.0, freshness_days=30)


@pytest.fixture
def orchestrator(store, mock_llm, telemetry, versioning):
    from customer_intel.pipeline.orchestrator import NBOrchestrator
    return NBOrchestrator(store, llm_client=mock_llm, telemetry=telemetry, versioning=versioning,
                          retry_budget=2)


@pytest.fixture
def rq_queue():
    """Stand-in for rq.Queue — records enqueue calls, never touches Redis."""
    return MagicMock()


@pytest.fixture
def job_queue(store, cost_service, orchestrator, versioning, telemetry, rq_queue):
    from customer_intel.services.job_queue import JobQueue
    return JobQueue(store, cost_service=cost_service, orchestrator=orchestrator,
                    versioning=versioning, telemetry=telemetry, queue=rq_queue,
                    retry_budget=2, backoff=[60, 300, 900])


class FakeRedis:
    """Minimal in-memory Redis fake (SET NX EX / GET / DELETE)."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def sample_payload(nb_code, **overrides):
    """Schema-valid payload for a step (citations kept separately, as persisted)."""
    payload = generate_from_schema(get_schema(nb_code))
    payload.pop('citations', None)
    payload.update(overrides)
    return payload


@pytest.fixture
def payload_for():
    """payload_for('NB1', summary='...') → schema-valid payload with overrides."""
    return sample_payload


@pytest.fixture
def make_company(store):
    """Factory — inserts a company with N sources, returns its id."""
    from customer_intel.models.company import Company
    from customer_intel.models.source import Source

    def _make(name='Acme Corp', ticker='ACME', sources=2):
        slug = name.lower().split()[0]
        with store.session_scope() as session:
            company = Company(name=name, ticker=ticker, website=f'https://{slug}.example.com',
                              sector='Industrials')
            session.add(company)
            session.flush()
            for i in range(sources):
                session.add(Source(
                    company_id=company.id,
                    type='url',
                    title=f'{name} annual report {2024 + i}',
                    url=f'https://{slug}.example.com/reports/{2024 + i}',
                    content=f'{name} reported steady growth in fiscal {2024 + i}.',
                    content_hash=f'{slug}-{i}',
                ))
            company_id = company.id
        return company_id
    return _make


@pytest.fixture
def make_run(store):
    """Factory — inserts a Run row directly, returns its id."""
    from customer_intel.models.run import Run

    def _make(company_id, status='queued', **fields):
        with store.session_scope() as session:
            run = Run(company_id=company_id, status=status, mode=fields.pop('mode', 'full'), **fields)
            session.add(run)
            session.flush()
            run_id = run.id
        return run_id
    return _make


@pytest.fixture
def make_completed_run(store, make_run):
    """
    Factory — a completed run with completed NB results.

    payloads: optional {nb_code: payload}; citations: optional {nb_code: [ids]}.
    """
    from customer_intel.models.nb_result import NBResult

    def _make(company_id, codes=None, payloads=None, citations=None, **fields):
        now = utcnow()
        fields.setdefault('started_at', now - timedelta(minutes=10))
        fields.setdefault('completed_at', now)
        run_id = make_run(company_id, status='completed', **fields)
        payloads = payloads or {}
        citations = citations or {}
        with store.session_scope() as session:
            for code in codes or NB_CODES:
                ids = citations.get(code, [1])
                session.add(NBResult(
                    run_id=run_id,
                    nb_code=code,
                    status='completed',
                    payload=payloads.get(code, sample_payload(code)),
                    citations=[{'source_id': i, 'quote': f'quote {i}'} for i in ids],
                    tokens_used=1000,
                    duration_ms=1500,
                    cost=0.06,
                    attempts=1,
                    completed_at=now,
                ))
        return run_id
    return _make


@pytest.fixture
def make_snapshot(store, versioning, make_completed_run):
    """Factory — completed run + snapshot, optionally backdated; returns snapshot id."""
    from customer_intel.models.snapshot import Snapshot

    def _make(company_id, age_days=0, **kwargs):
        run_id = make_completed_run(company_id, **kwargs)
        snapshot_id = versioning.create_snapshot(run_id)
        if age_days:
            with store.session_scope() as session:
                session.get(Snapshot, snapshot_id).created_at = utcnow() - timedelta(days=age_days)
        return snapshot_id
    return _make


# ---------------------------------------------------------------------------
# Flask
# ---------------------------------------------------------------------------

@pytest.fixture
def app(store, mock_llm, rq_queue):
    """Flask test app wired to the test store and mock LLM."""
    from customer_intel import create_app
    app = create_app()
    app.config['TESTING'] = True
    app.config['STORE'] = store
    app.config['LLM_CLIENT'] = mock_llm
    app.config['RQ_QUEUE'] = rq_queue
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
