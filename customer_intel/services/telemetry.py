"""
Telemetry logger — metric rows for cost, duration and diagnostics.

Writes degrade silently: every log method returns a success boolean so a
telemetry outage never aborts a run. Construct with strict=True to get a
TelemetryWriteError instead (used by maintenance tooling).
"""
import json
import logging
import time
from datetime import timedelta

from sqlalchemy import delete, select

from customer_intel.config import TELEMETRY_RETENTION_DAYS
from customer_intel.database import utcnow
from customer_intel.errors import TelemetryWriteError
from customer_intel.models.telemetry import Telemetry

logger = logging.getLogger('services.telemetry')

MAX_PAYLOAD_SIZE = 2000


def prepare_payload(payload):
    """Serialize-check a payload; oversized payloads become a truncation marker."""
    if payload is None:
        return None
    encoded = json.dumps(payload, default=str)
    if len(encoded) <= MAX_PAYLOAD_SIZE:
        return json.loads(encoded)
    return {
        'truncated': True,
        'original_size': len(encoded),
        'preview': encoded[:MAX_PAYLOAD_SIZE - 100],
    }


class TelemetryLogger:

    def __init__(self, store, strict=False):
        self.store = store
        self.strict = strict
        self._phase_starts = {}

    def _fail(self, key, run_id, value, exc):
        logger.error("Telemetry write failed for %s (run=%s): %s", key, run_id, exc)
        if self.strict:
            raise TelemetryWriteError(key, run_id, value, context={'error': str(exc)}, cause=exc)
        return False

    def log_metric(self, run_id, key, value=None, payload=None) -> bool:
        """Insert one metric row. Returns False (never raises) on failure."""
        try:
            row = Telemetry(
                run_id=run_id,
                metric_key=key,
                metric_value=float(value) if value is not None else None,
                payload=prepare_payload(payload),
            )
            with self.store.session_scope() as session:
                session.add(row)
            return True
        except Exception as e:
            return self._fail(key, run_id, value, e)

    def log_event(self, run_id, event, payload=None) -> bool:
        return self.log_metric(run_id, f'event_{event}', 1, payload)

    def log_batch(self, run_id, metrics) -> bool:
        """
        Insert several metrics atomically.

        metrics: {key: value} or {key: (value, payload)}. Either every row is
        written or none is.
        """
        try:
            with self.store.session_scope() as session:
                for key, item in metrics.items():
                    value, payload = item if isinstance(item, tuple) else (item, None)
                    session.add(Telemetry(
                        run_id=run_id,
                        metric_key=key,
                        metric_value=float(value) if value is not None else None,
                        payload=prepare_payload(payload),
                    ))
            return True
        except Exception as e:
            return self._fail(','.join(metrics), run_id, None, e)

    def log_phase_start(self, run_id, phase) -> bool:
        self._phase_starts[(run_id, phase)] = time.monotonic()
        return self.log_metric(run_id, f'phase_{phase}_start', 1)

    def log_phase_end(self, run_id, phase, payload=None) -> bool:
        started = self._phase_starts.pop((run_id, phase), None)
        duration_ms = int((time.monotonic() - started) * 1000) if started else None
        return self.log_metric(run_id, f'phase_{phase}_duration_ms', duration_ms, payload)

    def get_metrics(self, run_id, prefix=None):
        """Metric rows for a run, oldest first."""
        session = self.store.session()
        try:
            stmt = select(Telemetry).where(Telemetry.run_id == run_id).order_by(Telemetry.id)
            if prefix:
                stmt = stmt.where(Telemetry.metric_key.startswith(prefix))
            return [{
                'metric_key': row.metric_key,
                'metric_value': row.metric_value,
                'payload': row.payload,
                'created_at': row.created_at.isoformat() if row.created_at else None,
            } for row in session.scalars(stmt)]
        finally:
            session.close()

    def cleanup_old_telemetry(self, days=TELEMETRY_RETENTION_DAYS) -> int:
        """Delete rows older than `days`. Returns the number removed."""
        cutoff = utcnow() - timedelta(days=days)
        try:
            with self.store.session_scope() as session:
                result = session.execute(delete(Telemetry).where(Telemetry.created_at < cutoff))
                removed = result.rowcount or 0
            logger.info("Removed %d telemetry rows older than %d days", removed, days)
            return removed
        except Exception as e:
            self._fail('cleanup_old_telemetry', None, days, e)
            return 0
