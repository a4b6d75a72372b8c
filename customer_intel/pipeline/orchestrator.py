"""
NB Orchestrator — runs the fixed 15-step research protocol for a run.

Steps execute sequentially in protocol order. Each step:
  1. builds its prompt from company/source/target context plus the
     summaries of steps already committed for this run
  2. calls the LLM with the step's JSON schema
  3. validates the payload, repairing missing required fields when possible
  4. retries with validation feedback until the retry budget is spent
  5. persists the NBResult and meters tokens, duration and cost

The first step that cannot produce a valid payload fails the whole run
(fail-fast). Steps already completed for the run are skipped, so a retried
run resumes where it stopped.

Reuse: a single-company run copies steps from its fresh snapshot. A
comparison run copies a step only when both companies have it on record;
otherwise the step is executed with whichever side's findings exist quoted
in the prompt, so only the missing side is analyzed fresh.
"""
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select

from customer_intel import config
from customer_intel.database import utcnow
from customer_intel.errors import SynthesisPhaseError
from customer_intel.models.nb_result import NBResult
from customer_intel.models.source import Source
from customer_intel.pipeline import cost_config
from customer_intel.pipeline.base import CallFailed, Ok, RepairFailed, StepOutcome, ValidationFailed
from customer_intel.pipeline.nb_definitions import get_definition, get_schema
from customer_intel.pipeline.schema_validator import repair_and_validate, validate

logger = logging.getLogger('pipeline.orchestrator')

SOURCE_EXCERPT_CHARS = 1500
PRIOR_SUMMARY_CHARS = 400


# ── Prompt building ──────────────────────────────────────────────────────────

def build_system_prompt(definition: Dict[str, Any]) -> str:
    return (
        f"You are an expert business analyst executing the {definition['objective']} analysis "
        f"for an account research protocol.\n\n"
        f"Focus areas: {definition['search_focus']}.\n\n"
        "Respond with a single JSON object. It must include:\n"
        "- summary: a concise narrative of the findings\n"
        "- key_findings: at least one specific, evidence-backed finding\n"
        "- implications: what the findings mean for engagement\n"
        f"- {definition['block_name']}: the structured block described by the schema\n"
        "- citations: a list of {source_id, quote} referencing the context documents\n\n"
        "Only cite source ids that appear in the context. Do not invent facts."
    )


def _company_block(label, company):
    lines = [f"{label}: {company.get('name', '')}"]
    if company.get('ticker'):
        lines.append(f"Ticker: {company['ticker']}")
    if company.get('website'):
        lines.append(f"Website: {company['website']}")
    if company.get('sector'):
        lines.append(f"Sector: {company['sector']}")
    return '\n'.join(lines)


def _findings_block(label, entry):
    payload = entry.get('payload') or {}
    lines = [f"{label} (snapshot on record): {str(payload.get('summary', ''))[:PRIOR_SUMMARY_CHARS]}"]
    findings = payload.get('key_findings') or []
    lines += [f"- {str(item)[:200]}" for item in findings[:5]]
    return lines


def build_user_prompt(definition: Dict[str, Any], context: Dict[str, Any],
                      prior_summaries: Optional[Dict[str, str]] = None,
                      reused: Optional[Dict[str, Dict[str, Any]]] = None) -> str:
    """
    ``reused`` maps a block label ('Company', 'Comparison target') to a step
    entry taken from that company's fresh snapshot; those findings are quoted
    so the step only analyzes the side without one.
    """
    parts = [f"Analysis: {definition['title']}", '', _company_block('Company', context['company'])]
    if context.get('target'):
        parts += ['', _company_block('Comparison target', context['target'])]

    parts += ['', '=== CONTEXT DOCUMENTS ===']
    for source in context.get('sources', []):
        parts.append(f"[Source ID: {source['id']}] {source['title']}")
        if source.get('url'):
            parts.append(f"URL: {source['url']}")
        if source.get('excerpt'):
            parts.append(source['excerpt'])
        parts.append('')
    if not context.get('sources'):
        parts.append('(no documents available)')

    if prior_summaries:
        parts.append('=== PRIOR FINDINGS ===')
        for code, summary in prior_summaries.items():
            parts.append(f"{code}: {summary}")
        parts.append('')
    reused = {label: entry for label, entry in (reused or {}).items() if entry}
    if reused:
        parts.append('=== EXISTING FINDINGS ===')
        for label, entry in reused.items():
            parts += _findings_block(label, entry)
        parts += ['Build on these findings instead of repeating that analysis.', '']
    parts.append('=== END CONTEXT ===')
    return '\n'.join(parts)


def format_validation_feedback(errors) -> str:
    lines = ['', '=== VALIDATION ERRORS ===',
             'Your previous response was rejected. Fix these problems and respond again:']
    lines += [f"- {error}" for error in errors[:20]]
    return '\n'.join(lines)


def merge_comparison_entry(customer: Dict[str, Any], target: Dict[str, Any]) -> Dict[str, Any]:
    """
    Comparison step built from two fresh snapshots: the customer's payload
    with the target's nested under ``comparison_target``, citations unioned
    by source id.
    """
    payload = dict(customer.get('payload') or {})
    payload['comparison_target'] = target.get('payload') or {}
    citations = list(customer.get('citations') or [])
    seen = {c.get('source_id') for c in citations if isinstance(c, dict)}
    for citation in target.get('citations') or []:
        if isinstance(citation, dict) and citation.get('source_id') not in seen:
            citations.append(citation)
            seen.add(citation.get('source_id'))
    return {'payload': payload, 'citations': citations}


# ── Orchestrator ─────────────────────────────────────────────────────────────

class NBOrchestrator:

    def __init__(self, store, llm_client=None, telemetry=None, versioning=None, retry_budget=None):
        self.store = store
        if llm_client is None:
            from customer_intel.services.llm_client import get_llm_client
            llm_client = get_llm_client()
        self.llm = llm_client
        self.telemetry = telemetry
        self.versioning = versioning
        self.retry_budget = config.NB_RETRY_BUDGET if retry_budget is None else retry_budget

    @property
    def max_attempts(self) -> int:
        return 1 + self.retry_budget

    @property
    def provider(self) -> str:
        return getattr(self.llm, 'provider', None) or config.LLM_PROVIDER

    def _metrics(self, run_id, metrics):
        if self.telemetry is not None:
            self.telemetry.log_batch(run_id, metrics)

    # ── Protocol ─────────────────────────────────────────────────────────

    def execute_protocol(self, run_id) -> bool:
        """
        Run every step of the run's protocol. Returns True when all steps
        completed; False when a step failed (the run is then 'failed' with a
        structured error). Infrastructure errors propagate to the caller.
        """
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            run.transition_to('running')
            codes = run.step_codes
            reused_snapshot_id = run.reused_snapshot_id
            reused_target_snapshot_id = run.reused_target_snapshot_id
            company_id, target_id = run.company_id, run.target_company_id
            comparison = target_id is not None

        logger.info("Run %s: executing %d NB steps", run_id, len(codes))
        if self.telemetry is not None:
            self.telemetry.log_phase_start(run_id, 'nb_protocol')

        context = self.build_context(company_id, target_id)
        reusable = self._reusable_results(reused_snapshot_id)
        target_reusable = self._reusable_results(reused_target_snapshot_id) if comparison else {}
        done = self._completed_codes(run_id)

        for code in codes:
            if code in done:
                logger.info("Run %s: %s already completed, skipping", run_id, code)
                continue
            try:
                if not comparison and code in reusable:
                    self._reuse_step(run_id, code, reusable[code], reused_snapshot_id)
                elif comparison and code in reusable and code in target_reusable:
                    self._reuse_step(run_id, code, merge_comparison_entry(reusable[code], target_reusable[code]),
                                     reused_snapshot_id, reused_target_snapshot_id)
                else:
                    reused = {'Company': reusable.get(code),
                              'Comparison target': target_reusable.get(code)} if comparison else None
                    self.execute_nb(run_id, code, context=context, reused=reused)
            except SynthesisPhaseError as e:
                self._fail_run(run_id, e)
                return False

        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            run.transition_to('completed')
            actual_cost = run.actual_cost or 0.0

        if self.telemetry is not None:
            self.telemetry.log_phase_end(run_id, 'nb_protocol', {'nb_count': len(codes)})
        logger.info("Run %s: protocol completed (cost $%.4f)", run_id, actual_cost)
        return True

    def _fail_run(self, run_id, error: SynthesisPhaseError):
        logger.error("Run %s failed in phase %s: %s", run_id, error.phase, error.message,
                     extra={'run_id': run_id, 'phase': error.phase, 'error_type': error.error_type})
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            run.transition_to('failed', error=error.to_dict())
        if self.telemetry is not None:
            self.telemetry.log_event(run_id, 'run_failed', error.to_dict())

    # ── Single step ──────────────────────────────────────────────────────

    def execute_nb(self, run_id, nb_code, context=None, reused=None) -> Dict[str, Any]:
        """
        Execute one step and persist it. Returns the step's result map;
        raises SynthesisPhaseError when the retry budget is exhausted.

        ``reused`` quotes snapshot findings for one side of a comparison run
        (see build_user_prompt).
        """
        definition = get_definition(nb_code)
        schema = get_schema(nb_code)
        if context is None:
            run = self.store.load_run(run_id)
            context = self.build_context(run['company_id'], run['target_company_id'])

        system_prompt = build_system_prompt(definition)
        user_prompt = build_user_prompt(definition, context, self._prior_summaries(run_id, nb_code),
                                        reused)
        self._start_step(run_id, nb_code)

        feedback = ''
        tokens = duration_ms = 0
        outcome: StepOutcome = StepOutcome()
        attempts = 0
        for attempts in range(1, self.max_attempts + 1):
            outcome = self._attempt(system_prompt, user_prompt + feedback, schema)
            tokens += outcome.tokens_used
            duration_ms += outcome.duration_ms
            if outcome.ok:
                break
            logger.warning("Run %s %s attempt %d/%d: %s (%s)", run_id, nb_code, attempts,
                           self.max_attempts, type(outcome).__name__, '; '.join(outcome.errors[:3]),
                           extra={'run_id': run_id, 'nb_code': nb_code, 'attempt': attempts})
            feedback = format_validation_feedback(outcome.errors)

        cost = cost_config.cost_for_tokens(tokens, self.provider)

        if not outcome.ok:
            errors = outcome.errors
            self._finish_step(run_id, nb_code, status='failed', tokens=tokens, duration_ms=duration_ms,
                              cost=cost, attempts=attempts, error='; '.join(errors)[:2000])
            cause = outcome.error if isinstance(outcome, CallFailed) else None
            raise SynthesisPhaseError(
                phase=nb_code,
                run_id=run_id,
                message=f"{nb_code} failed after {attempts} attempt(s): {type(outcome).__name__}",
                context={'nb_code': nb_code, 'attempts': attempts, 'errors': errors[:20]},
                cause=cause,
            )

        payload = dict(outcome.payload)
        citations = payload.pop('citations', []) or []
        self._finish_step(run_id, nb_code, status='completed', tokens=tokens, duration_ms=duration_ms,
                          cost=cost, attempts=attempts, payload=payload, citations=citations,
                          repaired=outcome.repaired)

        self._metrics(run_id, {
            f'{nb_code}_tokens': tokens,
            f'{nb_code}_duration_ms': duration_ms,
            f'{nb_code}_cost': cost,
            f'{nb_code}_attempts': (attempts, {'repaired': outcome.repaired, 'provider': self.provider}),
        })
        logger.info("Run %s %s completed: %d tokens, %dms, $%.4f%s", run_id, nb_code, tokens,
                    duration_ms, cost, ' (repaired)' if outcome.repaired else '')
        return {
            'payload': payload,
            'citations': citations,
            'duration_ms': duration_ms,
            'tokens_used': tokens,
            'status': 'completed',
            'attempts': attempts,
            'repaired': outcome.repaired,
            'cost': cost,
        }

    def _attempt(self, system_prompt, user_prompt, schema) -> StepOutcome:
        """One LLM call resolved to an outcome; never raises."""
        try:
            response = self.llm.call_with_retry(system_prompt, user_prompt, schema, True,
                                                max_retries=config.LLM_RATE_LIMIT_RETRIES)
        except Exception as e:
            logger.warning("LLM call failed: %s", e)
            return CallFailed(error=e)

        meter = dict(
            tokens_used=response.get('tokens_used', 0) or 0,
            duration_ms=response.get('duration_ms', 0) or 0,
            model=response.get('model', ''),
        )
        content = response.get('content') or ''
        try:
            payload = json.loads(content)
        except ValueError as e:
            return ValidationFailed(errors=[f"Response is not valid JSON: {e}"],
                                    raw_content=content[:500], **meter)

        result = validate(payload, schema)
        if result['valid']:
            return Ok(payload=payload, **meter)
        if not isinstance(payload, dict):
            return ValidationFailed(errors=result['errors'], raw_content=content[:500], **meter)

        repaired, revalidated = repair_and_validate(payload, schema)
        if revalidated['valid']:
            return Ok(payload=repaired, repaired=True, **meter)
        return RepairFailed(errors=revalidated['errors'], repaired_payload=repaired, **meter)

    # ── Persistence helpers ──────────────────────────────────────────────

    def _step_row(self, session, run_id, nb_code) -> NBResult:
        row = session.scalar(select(NBResult).where(NBResult.run_id == run_id, NBResult.nb_code == nb_code))
        if row is None:
            row = NBResult(run_id=run_id, nb_code=nb_code)
            session.add(row)
        return row

    def _start_step(self, run_id, nb_code):
        with self.store.session_scope() as session:
            row = self._step_row(session, run_id, nb_code)
            if row.status == 'completed':
                raise SynthesisPhaseError(nb_code, run_id, f"{nb_code} is already completed for run {run_id}")
            row.status = 'running'
            row.error = None

    def _finish_step(self, run_id, nb_code, status, tokens, duration_ms, cost, attempts,
                     payload=None, citations=None, repaired=False, error=None):
        """Write the step result and bump the run's accumulators in one transaction."""
        with self.store.session_scope() as session:
            run = self.store.get_run(session, run_id)
            row = self._step_row(session, run_id, nb_code)
            row.status = status
            row.payload = payload
            row.citations = citations
            row.tokens_used = tokens
            row.duration_ms = duration_ms
            row.cost = cost
            row.attempts = attempts
            row.repaired = repaired
            row.error = error
            if status == 'completed':
                row.completed_at = utcnow()
            run.actual_tokens = (run.actual_tokens or 0) + tokens
            run.actual_cost = (run.actual_cost or 0.0) + cost

    def _reuse_step(self, run_id, nb_code, entry, snapshot_id, target_snapshot_id=None):
        with self.store.session_scope() as session:
            row = self._step_row(session, run_id, nb_code)
            row.status = 'completed'
            row.payload = entry.get('payload') or {}
            row.citations = entry.get('citations') or []
            row.reused = True
            row.tokens_used = 0
            row.duration_ms = 0
            row.cost = 0.0
            row.completed_at = utcnow()
        sources = {'snapshot_id': snapshot_id}
        if target_snapshot_id is not None:
            sources['target_snapshot_id'] = target_snapshot_id
        self._metrics(run_id, {f'{nb_code}_reused': (1, sources)})
        logger.info("Run %s %s reused from snapshot(s) %s", run_id, nb_code, sorted(sources.values()))

    def _reusable_results(self, snapshot_id) -> Dict[str, Dict[str, Any]]:
        if snapshot_id is None or self.versioning is None:
            return {}
        steps = self.versioning.get_snapshot(snapshot_id).get('nb_results', {})
        return {code: item for code, item in steps.items() if item.get('status') == 'completed'}

    def _completed_codes(self, run_id):
        session = self.store.session()
        try:
            return set(session.scalars(
                select(NBResult.nb_code).where(NBResult.run_id == run_id, NBResult.status == 'completed')
            ))
        finally:
            session.close()

    def _prior_summaries(self, run_id, nb_code) -> Dict[str, str]:
        session = self.store.session()
        try:
            rows = session.scalars(
                select(NBResult)
                .where(NBResult.run_id == run_id, NBResult.status == 'completed', NBResult.nb_code != nb_code)
                .order_by(NBResult.id)
            ).all()
            return {
                row.nb_code: str((row.payload or {}).get('summary', ''))[:PRIOR_SUMMARY_CHARS]
                for row in rows
            }
        finally:
            session.close()

    def build_context(self, company_id, target_company_id=None) -> Dict[str, Any]:
        """Normalized company, target and source context for prompts."""
        company_ids = [cid for cid in (company_id, target_company_id) if cid is not None]
        session = self.store.session()
        try:
            sources = [{
                'id': source.id,
                'company_id': source.company_id,
                'title': source.title or source.uploaded_filename or f'Source {source.id}',
                'type': source.type,
                'url': source.url or '',
                'excerpt': (source.content or '')[:SOURCE_EXCERPT_CHARS],
            } for source in session.scalars(
                select(Source).where(Source.company_id.in_(company_ids)).order_by(Source.id)
            )]
        finally:
            session.close()
        return {
            'company': self.store.company_context(company_id),
            'target': self.store.company_context(target_company_id) if target_company_id else None,
            'sources': sources,
        }

    def get_run_results(self, run_id) -> Dict[str, Dict[str, Any]]:
        """{nb_code: {payload, citations, duration_ms, tokens_used, status}} in protocol order."""
        session = self.store.session()
        try:
            run = self.store.get_run(session, run_id)
            rows = {r.nb_code: r for r in session.scalars(select(NBResult).where(NBResult.run_id == run_id))}
            order = run.step_codes + sorted(code for code in rows if code not in run.step_codes)
            return {code: rows[code].to_dict() for code in order if code in rows}
        finally:
            session.close()
