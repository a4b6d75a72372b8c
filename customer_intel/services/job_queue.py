"""
Job Queue — run admission, lifecycle state, retries and progress.

Lifecycle:
  queued → running → completed → archived
  running → retrying → running          (bounded by RUN_RETRY_BUDGET)
  retrying → failed                     (budget exhausted)
  queued → cancelled                    (only while queued)

queue_run() records intent synchronously; execution happens in an RQ worker
via run_job(run_id), or inline through execute_run() from the CLI.
"""
import logging
import time
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from customer_intel import config
from customer_intel.database import utcnow
from customer_intel.errors import CostLimitExceeded, IntelError
from customer_intel.models.nb_result import NBResult
from customer_intel.models.run import Run
from customer_intel.models.telemetry import Telemetry

logger = logging.getLogger('services.job_queue')


# ── Lazy RQ queue (avoids import-time Redis connection) ─────────────────────

_queue = None


def _get_queue():
    global _queue
    if _queue is None:
        from customer_intel.extensions import redis_client
        from rq import Queue
        _queue = Queue('nb_runs', connection=redis_client)
    return _queue


def error_payload(exception) -> Dict[str, Any]:
    """Structured error blob for any exception."""
    if isinstance(exception, IntelError):
        return exception.to_dict()
    return {
        'error_type': type(exception).__name__,
        'message': str(exception) or type(exception).__name__,
        'timestamp': utcnow().isoformat(),
    }


class JobQueue:

    def __init__(self, store, cost_service=None, orchestrator=None, versioning=None,
                 telemetry=None, queue=None, lock=None, retry_budget=None, backoff=None):
        self.store = store
        self.cost_service = cost_service
        self.orchestrator = orchestrator
        self.versioning = versioning
        self.telemetry = telemetry
        self.queue = queue
        self.lock = lock
        self.retry_budget = config.RUN_RETRY_BUDGET if retry_budget is None else retry_budget
        self.backoff = list(backoff or config.RETRY_BACKOFF_SECONDS)

    def _event(self, run_id, event, payload=None):
        if self.telemetry is not None:
            self.telemetry.log_event(run_id, event, payload)

    # ── Admission ────────────────────────────────────────────────────────

    def queue_run(self, company_id, target_id=None, user_id=None, options=None) -> int:
        """
        Estimate, enforce the hard limit, then persist a queued run.

        Raises CostLimitExceeded (and writes no run row) when the estimate is
        over the hard limit.
        """
        options = dict(options or {})
        nb_codes = options.get('nb_codes')
        if nb_codes:
            unknown = [code for code in nb_codes if code not in config.NB_CODES]
            if unknown:
                raise ValueError(f"Unknown NB codes: {', '.join(unknown)}")
        mode = options.get('mode') or ('comparison' if target_id else 'partial' if nb_codes else 'full')
        if mode not in config.RUN_MODES:
            raise ValueError(f"Unsupported run mode: {mode}")

        estimate = self.cost_service.estimate_cost(
            company_id, target_id, force_refresh=bool(options.get('force_refresh')), nb_codes=nb_codes,
        )
        if not estimate['can_proceed']:
            logger.warning("Refusing run for company %s: estimate $%.2f over limit $%.2f",
                           company_id, estimate['total_cost'], self.cost_service.hard_limit)
            self._event(None, 'run_refused', {
                'company_id': company_id,
                'target_id': target_id,
                'estimated_cost': estimate['total_cost'],
                'limit': self.cost_service.hard_limit,
            })
            raise CostLimitExceeded(estimate, self.cost_service.hard_limit)

        with self.store.session_scope() as session:
            run = Run(
                company_id=company_id,
                target_company_id=target_id,
                user_id=str(user_id) if user_id is not None else None,
                mode=mode,
                status='queued',
                nb_codes=list(nb_codes) if nb_codes else None,
                options={k: v for k, v in options.items() if k in ('force_refresh', 'mode', 'nb_codes')},
                estimated_tokens=estimate['total_tokens'],
                estimated_cost=estimate['total_cost'],
                reused_snapshot_id=estimate['reused_snapshot_id'],
                reused_target_snapshot_id=estimate['reused_target_snapshot_id'],
            )
            session.add(run)
            session.flush()
            run_id = run.id

        if self.telemetry is not None:
            self.telemetry.log_metric(run_id, 'estimated_cost', estimate['total_cost'], {
                'tokens': estimate['total_tokens'],
                'provider': estimate['provider'],
                'has_warnings': bool(estimate['warnings']),
                'reuse_savings': estimate['reuse_savings'],
                'reused_nbs': estimate['reused_nbs'],
            })
        self._event(run_id, 'run_queued', {'company_id': company_id, 'target_id': target_id, 'mode': mode})
        logger.info("Queued run %s for company %s (mode=%s, est $%.4f, savings $%.4f)",
                    run_id, company_id, mode, estimate['total_cost'], estimate['reuse_savings'])

        if options.get('enqueue', True):
            self._enqueue(run_id)
        return run_id

    def _enqueue(self, run_id, delay_seconds=None) -> bool:
        """Hand the run to an RQ worker. Failures are logged, not raised."""
        try:
            queue = self.queue if self.queue is not None else _get_queue()
            if delay_seconds:
                queue.enqueue_in(timedelta(seconds=delay_seconds), run_job, run_id,
                                 job_timeout=config.RUN_JOB_TIMEOUT)
            else:
                queue.enqueue(run_job, run_id, job_timeout=config.RUN_JOB_TIMEOUT)
            return True
        except Exception as e:
            logger.error("Failed to enqueue run %s: %s", run_id, e)
            return False

    # ── Execution ────────────────────────────────────────────────────────

    def execute_run(self, run_id) -> bool:
        """Run the NB protocol for a queued or retrying run."""
        token = self.lock.acquire(run_id) if self.lock is not None else None
        if self.lock is not None and token is None:
            logger.warning("Run %s is already executing elsewhere, skipping", run_id, extra={'run_id': run_id})
            return False

        try:
            status = self.store.load_run(run_id)['status']
            if status == 'completed':
                return True
            if status not in ('queued', 'retrying', 'running'):
                logger.warning("Run %s is %s, not executing", run_id, status, extra={'run_id': run_id})
                return False

            try:
                self.update_run_status(run_id, 'running')
                success = self.orchestrator.execute_protocol(run_id)
            except Exception as e:
                logger.error("Run %s raised during execution: %s", run_id, e, exc_info=True,
                             extra={'run_id': run_id})
                return self.handle_failure(run_id, e)
        finally:
            if token is not None:
                self.lock.release(run_id, token)

        if not success:
            return False

        self.update_run_status(run_id, 'completed')
        if self.cost_service is not None:
            try:
                self.cost_service.record_actuals(run_id)
            except Exception as e:
                logger.error("Failed to record actuals for run %s: %s", run_id, e)
        if self.versioning is not None:
            try:
                self.versioning.create_snapshot(run_id)
            except Exception as e:
                logger.error("Snapshot for run %s failed: %s", run_id, e, exc_info=True)
        return True

    def handle_failure(self, run_id, exception) -> bool:
        """Retry while budget remains, else fail. Always returns False."""
        error = error_payload(exception)
        delay = None
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            retries = run.retry_count or 0
            if retries < self.retry_budget:
                run.retry_count = retries + 1
                run.transition_to('retrying', error=dict(error, retry_count=run.retry_count))
                delay = self.backoff[min(retries, len(self.backoff) - 1)] if self.backoff else 0
            else:
                run.transition_to('failed', error=dict(error, retry_count=retries))
            status, retry_count = run.status, run.retry_count

        self._event(run_id, f'run_{status}', {'retry_count': retry_count, 'error': error})
        if status == 'retrying':
            logger.warning("Run %s retry %d/%d in %ss: %s", run_id, retry_count,
                           self.retry_budget, delay, error['message'],
                           extra={'run_id': run_id, 'error_type': error.get('error_type')})
            self._enqueue(run_id, delay_seconds=delay)
        else:
            logger.error("Run %s failed after %d retries: %s", run_id, retry_count, error['message'],
                         extra={'run_id': run_id, 'error_type': error.get('error_type')})
        return False

    def update_run_status(self, run_id, status, error=None) -> Dict[str, Any]:
        """Validated status write. Raises on illegal transitions."""
        if isinstance(error, str):
            error = {'message': error}
        elif isinstance(error, BaseException):
            error = error_payload(error)
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            previous = run.status
            run.transition_to(status, error=error)
            snapshot = run.to_dict()
        if previous != status:
            self._event(run_id, f'status_{status}', {'from': previous})
        return snapshot

    def cancel_run(self, run_id) -> bool:
        """Cancel a queued run. Running (or finished) runs are left untouched."""
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            if run.status != 'queued':
                logger.info("Cancel refused for run %s (status=%s)", run_id, run.status)
                return False
            run.transition_to('cancelled')
        self._event(run_id, 'run_cancelled')
        return True

    # ── Progress & stats ─────────────────────────────────────────────────

    def get_run_progress(self, run_id) -> Dict[str, Any]:
        session = self.store.session()
        try:
            run = self.store.get_run(session, run_id)
            rows = session.scalars(select(NBResult).where(NBResult.run_id == run_id)).all()
            codes = run.step_codes
            completed = sum(1 for r in rows if r.status == 'completed' and r.nb_code in codes)
            current = next((r.nb_code for r in rows if r.status == 'running'), None)
            total = len(codes)

            eta = None
            eta_seconds = None
            if run.status == 'running' and run.started_at and completed:
                now = utcnow()
                per_step = (now - run.started_at).total_seconds() / completed
                eta_seconds = int(per_step * (total - completed))
                eta = (now + timedelta(seconds=eta_seconds)).isoformat()

            return {
                'run_id': run.id,
                'status': run.status,
                'completed_nbs': completed,
                'total_nbs': total,
                'current_nb': current,
                'percentage': round(completed / total * 100, 1) if total else 0.0,
                'eta': eta,
                'eta_seconds': eta_seconds,
                'started_at': run.started_at.isoformat() if run.started_at else None,
                'retry_count': run.retry_count or 0,
                'estimated_cost': run.estimated_cost,
                'estimated_tokens': run.estimated_tokens,
                'actual_cost': run.actual_cost or 0.0,
                'error': run.error,
            }
        finally:
            session.close()

    def watch_run_progress(self, run_id, interval=5.0, timeout=None, on_update=None, sleep=time.sleep):
        """
        Poll progress until the run reaches a terminal state (or timeout).
        Calls on_update(progress) whenever the status or step count changes.
        """
        deadline = time.monotonic() + timeout if timeout else None
        last = None
        while True:
            progress = self.get_run_progress(run_id)
            marker = (progress['status'], progress['completed_nbs'], progress['current_nb'])
            if marker != last and on_update is not None:
                on_update(progress)
            last = marker
            if progress['status'] in config.TERMINAL_STATUSES:
                return progress
            if deadline is not None and time.monotonic() >= deadline:
                return progress
            sleep(interval)

    def get_queue_stats(self) -> Dict[str, Any]:
        session = self.store.session()
        try:
            counts = dict(session.execute(select(Run.status, func.count(Run.id)).group_by(Run.status)).all())
            timings = session.execute(select(Run.created_at, Run.started_at, Run.completed_at, Run.status)
                                      .where(Run.started_at.is_not(None))).all()
        finally:
            session.close()

        waits = [(started - created).total_seconds() for created, started, _, _ in timings if created]
        executions = [(done - started).total_seconds()
                      for _, started, done, status in timings if done and status in ('completed', 'archived')]
        stats = {status: counts.get(status, 0) for status in config.RUN_STATUSES}
        stats.update({
            'total': sum(counts.values()),
            'avg_wait_time': round(sum(waits) / len(waits), 1) if waits else 0.0,
            'avg_execution_time': round(sum(executions) / len(executions), 1) if executions else 0.0,
        })
        return stats

    def get_nb_breakdown(self, run_id) -> List[Dict[str, Any]]:
        """One row per protocol step, including steps not yet started."""
        session = self.store.session()
        try:
            run = self.store.get_run(session, run_id)
            rows = {r.nb_code: r for r in session.scalars(select(NBResult).where(NBResult.run_id == run_id))}
            breakdown = []
            for code in run.step_codes:
                row = rows.get(code)
                breakdown.append({
                    'nb_code': code,
                    'status': row.status if row else 'pending',
                    'tokens_used': (row.tokens_used or 0) if row else 0,
                    'duration_ms': (row.duration_ms or 0) if row else 0,
                    'cost': (row.cost or 0.0) if row else 0.0,
                    'attempts': (row.attempts or 0) if row else 0,
                    'repaired': bool(row.repaired) if row else False,
                    'reused': bool(row.reused) if row else False,
                })
            return breakdown
        finally:
            session.close()

    # ── Retention ────────────────────────────────────────────────────────

    def cleanup_old_runs(self, age_days=None) -> int:
        """
        Archive completed runs older than age_days: child NB results and
        telemetry are removed (telemetry folded into one summary row) and the
        run row is kept with status 'archived'.
        """
        age_days = config.RUN_RETENTION_DAYS if age_days is None else age_days
        cutoff = utcnow() - timedelta(days=age_days)
        session = self.store.session()
        try:
            run_ids = list(session.scalars(
                select(Run.id).where(Run.status == 'completed', Run.completed_at < cutoff)
            ))
        finally:
            session.close()

        archived = 0
        for run_id in run_ids:
            try:
                self._archive_run(run_id)
                archived += 1
            except Exception as e:
                logger.error("Failed to archive run %s: %s", run_id, e)
        logger.info("Archived %d runs older than %d days", archived, age_days)
        return archived

    def _archive_run(self, run_id):
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            keys = Counter(session.scalars(select(Telemetry.metric_key).where(Telemetry.run_id == run_id)))
            nb_count = session.scalar(select(func.count(NBResult.id)).where(NBResult.run_id == run_id))
            session.execute(delete(NBResult).where(NBResult.run_id == run_id))
            session.execute(delete(Telemetry).where(Telemetry.run_id == run_id))
            session.add(Telemetry(
                run_id=run_id,
                metric_key='archived_telemetry',
                metric_value=float(sum(keys.values())),
                payload={
                    'metric_counts': dict(keys),
                    'nb_results_removed': nb_count,
                    'archived_at': utcnow().isoformat(),
                },
            ))
            run.transition_to('archived')


# ── Wiring ───────────────────────────────────────────────────────────────────

def build_job_queue(store=None, llm_client=None, queue=None, lock=None) -> JobQueue:
    """Assemble a JobQueue with its collaborators sharing one Store."""
    from customer_intel.pipeline.orchestrator import NBOrchestrator
    from customer_intel.services.cost import CostService
    from customer_intel.services.db import Store
    from customer_intel.services.telemetry import TelemetryLogger
    from customer_intel.services.versioning import VersioningService

    store = store or Store()
    telemetry = TelemetryLogger(store)
    versioning = VersioningService(store, telemetry=telemetry)
    return JobQueue(
        store,
        cost_service=CostService(store, versioning=versioning, telemetry=telemetry),
        orchestrator=NBOrchestrator(store, llm_client=llm_client, telemetry=telemetry, versioning=versioning),
        versioning=versioning,
        telemetry=telemetry,
        queue=queue,
        lock=lock,
    )


def run_job(run_id):
    """RQ entry point: execute one run with default wiring."""
    from customer_intel.services.run_lock import RunLock
    logger.info("Worker picked up run %s", run_id)
    return build_job_queue(lock=RunLock()).execute_run(run_id)
