"""
Centralized configuration — env vars, NB protocol constants, run lifecycle.
"""
import os


def _int_list(raw, default):
    if not raw:
        return default
    return [int(part) for part in raw.split(',') if part.strip()]


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')

# ── Redis / RQ ────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
RUN_JOB_TIMEOUT = int(os.getenv('RUN_JOB_TIMEOUT', 7200))
RUN_LOCK_TTL = int(os.getenv('RUN_LOCK_TTL', 7200))

# ── PostgreSQL ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///local.db')

# ── LLM provider ──────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'gpt-4')
LLM_TEMPERATURE = float(os.getenv('LLM_TEMPERATURE', 0.1))
LLM_MAX_TEMPERATURE = float(os.getenv('LLM_MAX_TEMPERATURE', 0.2))
LLM_TIMEOUT_SECONDS = int(os.getenv('LLM_TIMEOUT_SECONDS', 120))
LLM_RATE_LIMIT_RETRIES = int(os.getenv('LLM_RATE_LIMIT_RETRIES', 4))
MOCK_LLM = bool(os.getenv('MOCK_LLM'))

# ── Retry budgets ────────────────────────────────────────────────────────────
NB_RETRY_BUDGET = int(os.getenv('NB_RETRY_BUDGET', 2))
RUN_RETRY_BUDGET = int(os.getenv('RUN_RETRY_BUDGET', 2))
RETRY_BACKOFF_SECONDS = _int_list(os.getenv('RETRY_BACKOFF_SECONDS'), [60, 300, 900])

# ── Retention / freshness ────────────────────────────────────────────────────
SNAPSHOT_FRESHNESS_DAYS = int(os.getenv('SNAPSHOT_FRESHNESS_DAYS', 30))
RUN_RETENTION_DAYS = int(os.getenv('RUN_RETENTION_DAYS', 90))
TELEMETRY_RETENTION_DAYS = int(os.getenv('TELEMETRY_RETENTION_DAYS', 90))
SNAPSHOT_MAX_FIELD_BYTES = int(os.getenv('SNAPSHOT_MAX_FIELD_BYTES', 10 * 1024 * 1024))

# ── Cost overrides (YAML holds the defaults) ─────────────────────────────────
COST_WARNING_THRESHOLD = os.getenv('COST_WARNING_THRESHOLD')
COST_HARD_LIMIT = os.getenv('COST_HARD_LIMIT')

# ── NB protocol ──────────────────────────────────────────────────────────────
NB_CODES = [f'NB{i}' for i in range(1, 16)]

# ── Run lifecycle ────────────────────────────────────────────────────────────
RUN_MODES = ['full', 'comparison', 'partial']

RUN_STATUSES = [
    'queued',
    'running',
    'retrying',
    'completed',
    'failed',
    'cancelled',
    'archived',
]

TERMINAL_STATUSES = ('completed', 'failed', 'cancelled', 'archived')

# status → statuses it may move to (same-status writes are always allowed)
RUN_TRANSITIONS = {
    'queued':    ('running', 'cancelled', 'retrying', 'failed'),
    'running':   ('completed', 'failed', 'retrying'),
    'retrying':  ('running', 'failed'),
    'completed': ('archived',),
    'failed':    (),
    'cancelled': (),
    'archived':  (),
}
