"""
Cost & reuse service — pre-run estimates, reuse savings and spend guardrails.

Estimates price every NB step from the per-step token profile in
cost_config.yaml (plus source-retrieval overhead and a history-based
calibration factor). Steps captured in a fresh snapshot of the same company
are excluded from the total and counted as reuse savings instead, using the
same per-step price, so full-cost minus reuse-cost equals the savings.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from customer_intel import config
from customer_intel.database import utcnow
from customer_intel.models.nb_result import NBResult
from customer_intel.models.run import Run
from customer_intel.pipeline import cost_config

logger = logging.getLogger('services.cost')


def format_duration(seconds) -> str:
    """45 → '45s', 200 → '3m 20s', 3900 → '1h 5m'."""
    if seconds is None:
        return ''
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def calculate_variance(estimated, actual) -> float:
    """Signed percentage (actual - estimated) / estimated × 100."""
    estimated = estimated or 0
    actual = actual or 0
    if estimated == 0:
        return 100.0 if actual > 0 else 0.0
    return round((actual - estimated) / estimated * 100, 2)


class CostService:

    def __init__(self, store, versioning=None, telemetry=None, provider=None,
                 warning_threshold=None, hard_limit=None, freshness_days=None):
        self.store = store
        self.versioning = versioning
        self.telemetry = telemetry
        self.provider = provider
        self.warning_threshold = (cost_config.get_warning_threshold()
                                  if warning_threshold is None else warning_threshold)
        self.hard_limit = cost_config.get_hard_limit() if hard_limit is None else hard_limit
        self.freshness_days = config.SNAPSHOT_FRESHNESS_DAYS if freshness_days is None else freshness_days

    calculate_variance = staticmethod(calculate_variance)
    format_duration = staticmethod(format_duration)

    def get_configured_provider(self) -> str:
        return self.provider or config.LLM_PROVIDER or 'gpt-4'

    def calculate_token_cost(self, tokens, kind='output', provider=None) -> float:
        return cost_config.cost_for_tokens(tokens, provider or self.get_configured_provider(), kind)

    def can_proceed(self, estimate) -> bool:
        return estimate.get('total_cost', 0.0) <= self.hard_limit

    # ── Calibration ──────────────────────────────────────────────────────

    def get_calibration_factors(self) -> Dict[str, float]:
        """
        Actual/estimated token ratio over recent completed runs, clamped to
        [min_factor, max_factor]. Estimates only ever get more conservative.
        """
        settings = cost_config.get_calibration_settings()
        cutoff = utcnow() - timedelta(days=settings['lookback_days'])
        session = self.store.session()
        try:
            rows = session.execute(
                select(Run.estimated_tokens, Run.actual_tokens).where(
                    Run.status == 'completed',
                    Run.completed_at >= cutoff,
                    Run.estimated_tokens > 0,
                    Run.actual_tokens > 0,
                )
            ).all()
        finally:
            session.close()

        if not rows:
            return {'input': 1.0, 'output': 1.0, 'sample_size': 0}
        ratio = sum(actual for _, actual in rows) / sum(est for est, _ in rows)
        factor = min(max(ratio, settings['min_factor']), settings['max_factor'])
        return {'input': round(factor, 4), 'output': round(factor, 4), 'sample_size': len(rows)}

    # ── Estimation ───────────────────────────────────────────────────────

    def _price_step(self, nb_code, provider, factors):
        avg = cost_config.get_avg_tokens(nb_code)
        overhead = cost_config.get_source_overhead()
        input_tokens = int(round(avg['input'] * (1 + overhead) * factors['input']))
        output_tokens = int(round(avg['output'] * factors['output']))
        cost = (self.calculate_token_cost(input_tokens, 'input', provider)
                + self.calculate_token_cost(output_tokens, 'output', provider))
        return input_tokens, output_tokens, cost

    def _reusable_steps(self, company_id, force_refresh):
        if force_refresh or self.versioning is None:
            return None, set()
        snapshot_id = self.versioning.get_reusable_snapshot(company_id, self.freshness_days)
        if snapshot_id is None:
            return None, set()
        return snapshot_id, set(self.versioning.get_snapshot_nb_codes(snapshot_id))

    def estimate_cost(self, company_id, target_company_id=None, force_refresh=False,
                      nb_codes=None) -> Dict[str, Any]:
        """Projected tokens/cost for a run, net of reusable steps."""
        provider = self.get_configured_provider()
        pricing = cost_config.get_pricing(provider)
        factors = self.get_calibration_factors()
        codes = list(nb_codes or config.NB_CODES)

        companies = [('customer', company_id)]
        if target_company_id is not None:
            companies.append(('target', target_company_id))

        input_tokens = output_tokens = 0
        total_cost = reuse_savings = 0.0
        breakdown: List[Dict[str, Any]] = []
        reuse = {}

        for role, cid in companies:
            snapshot_id, reusable = self._reusable_steps(cid, force_refresh)
            reused = []
            for code in codes:
                step_in, step_out, step_cost = self._price_step(code, provider, factors)
                if code in reusable:
                    reuse_savings += step_cost
                    reused.append(code)
                    continue
                input_tokens += step_in
                output_tokens += step_out
                total_cost += step_cost
                breakdown.append({
                    'company_id': cid,
                    'role': role,
                    'nb_code': code,
                    'input_tokens': step_in,
                    'output_tokens': step_out,
                    'cost': round(step_cost, 6),
                })
            reuse[role] = (snapshot_id, reused)

        warnings = self._build_warnings(total_cost)
        estimate = {
            'company_id': company_id,
            'target_company_id': target_company_id,
            'total_cost': round(total_cost, 6),
            'total_tokens': input_tokens + output_tokens,
            'input_tokens': input_tokens,
            'output_tokens': output_tokens,
            'breakdown': breakdown,
            'warnings': warnings,
            'reuse_savings': round(reuse_savings, 6),
            'reused_snapshot_id': reuse['customer'][0],
            'reused_nbs': reuse['customer'][1],
            'reused_target_snapshot_id': reuse.get('target', (None, []))[0],
            'reused_target_nbs': reuse.get('target', (None, []))[1],
            'is_comparison': target_company_id is not None,
            'force_refresh': force_refresh,
            'provider': provider,
            'pricing': pricing,
            'calibration': factors,
            'thresholds': {'warning': self.warning_threshold, 'limit': self.hard_limit},
        }
        estimate['can_proceed'] = self.can_proceed(estimate)
        logger.info("Estimate company=%s target=%s: $%.4f (%d tokens, savings $%.4f, reused %d)",
                    company_id, target_company_id, total_cost, estimate['total_tokens'],
                    reuse_savings, len(estimate['reused_nbs']) + len(estimate['reused_target_nbs']))
        return estimate

    def _build_warnings(self, total_cost) -> List[Dict[str, Any]]:
        warnings = []
        if total_cost > self.warning_threshold:
            warnings.append({
                'type': 'cost_warning',
                'message': f"Estimated cost ${total_cost:.2f} exceeds warning threshold "
                           f"${self.warning_threshold:.2f}",
                'threshold': self.warning_threshold,
                'exceeded_by': round(total_cost - self.warning_threshold, 6),
            })
        if total_cost > self.hard_limit:
            warnings.append({
                'type': 'cost_limit',
                'message': f"Estimated cost ${total_cost:.2f} exceeds hard limit ${self.hard_limit:.2f}",
                'threshold': self.hard_limit,
                'exceeded_by': round(total_cost - self.hard_limit, 6),
                'block_run': True,
            })
        return warnings

    # ── Actuals & reporting ──────────────────────────────────────────────

    def record_actuals(self, run_id) -> Dict[str, Any]:
        """Roll NB results up into the run's actual tokens/cost."""
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            results = session.scalars(select(NBResult).where(NBResult.run_id == run_id)).all()
            run.actual_tokens = sum(r.tokens_used or 0 for r in results)
            run.actual_cost = round(sum(r.cost or 0.0 for r in results), 6)
            actuals = {
                'run_id': run.id,
                'actual_tokens': run.actual_tokens,
                'actual_cost': run.actual_cost,
                'estimated_cost': run.estimated_cost,
                'variance_pct': calculate_variance(run.estimated_cost, run.actual_cost),
            }
        if self.telemetry is not None:
            self.telemetry.log_metric(run_id, 'actual_cost', actuals['actual_cost'], {
                'tokens': actuals['actual_tokens'],
                'variance_pct': actuals['variance_pct'],
            })
        return actuals

    def get_run_cost_report(self, run_id) -> Dict[str, Any]:
        session = self.store.session()
        try:
            run = self.store.get_run(session, run_id)
            results = session.scalars(select(NBResult).where(NBResult.run_id == run_id)).all()
            by_code = {r.nb_code: r for r in results}
            breakdown = [{
                'nb_code': code,
                'status': by_code[code].status,
                'tokens': by_code[code].tokens_used or 0,
                'cost': by_code[code].cost or 0.0,
                'duration_ms': by_code[code].duration_ms or 0,
                'reused': bool(by_code[code].reused),
            } for code in run.step_codes if code in by_code]
            duration = None
            if run.started_at and run.completed_at:
                duration = int((run.completed_at - run.started_at).total_seconds())
            return {
                'run_id': run.id,
                'status': run.status,
                'estimated_cost': run.estimated_cost,
                'actual_cost': run.actual_cost or 0.0,
                'variance_pct': calculate_variance(run.estimated_cost, run.actual_cost),
                'estimated_tokens': run.estimated_tokens,
                'actual_tokens': run.actual_tokens or 0,
                'token_variance_pct': calculate_variance(run.estimated_tokens, run.actual_tokens),
                'breakdown': breakdown,
                'duration': duration,
                'duration_formatted': format_duration(duration),
            }
        finally:
            session.close()

    def get_cost_history(self, company_id=None, limit=20) -> Dict[str, Any]:
        """Recent completed runs with estimated vs actual cost, plus a summary."""
        session = self.store.session()
        try:
            stmt = (select(Run).where(Run.status == 'completed')
                    .order_by(Run.completed_at.desc(), Run.id.desc()).limit(limit))
            if company_id is not None:
                stmt = stmt.where(Run.company_id == company_id)
            runs = [{
                'run_id': run.id,
                'company_id': run.company_id,
                'mode': run.mode,
                'estimated_cost': run.estimated_cost,
                'actual_cost': run.actual_cost or 0.0,
                'variance_pct': calculate_variance(run.estimated_cost, run.actual_cost),
                'completed_at': run.completed_at.isoformat() if run.completed_at else None,
            } for run in session.scalars(stmt)]
        finally:
            session.close()

        total = sum(r['actual_cost'] for r in runs)
        return {
            'runs': runs,
            'summary': {
                'count': len(runs),
                'total_cost': round(total, 6),
                'avg_cost': round(total / len(runs), 6) if runs else 0.0,
                'avg_variance_pct': round(sum(r['variance_pct'] for r in runs) / len(runs), 2) if runs else 0.0,
            },
        }
