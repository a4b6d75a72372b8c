"""
Versioning & diff engine.

Snapshots capture a run's completed NB results (payloads, citations, sources,
metadata) as one immutable JSON document keyed by company. Diffs compare two
snapshots structurally and are cached one row per ordered (from, to) pair.

Diff buckets mirror the payload's nesting:

    changed = {'a': {'b': {'c': {'from': 1, 'to': 2}}}}

Arrays are compared as whole values; any difference reports the full
from/to arrays as a single changed entry.
"""
import json
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from customer_intel.config import NB_CODES, SNAPSHOT_FRESHNESS_DAYS, SNAPSHOT_MAX_FIELD_BYTES
from customer_intel.database import utcnow
from customer_intel.errors import SnapshotNotFound, SnapshotUnavailable
from customer_intel.models.company import Company
from customer_intel.models.diff import Diff
from customer_intel.models.nb_result import NBResult
from customer_intel.models.run import Run
from customer_intel.models.snapshot import Snapshot
from customer_intel.models.source import Source

logger = logging.getLogger('services.versioning')

TRUNCATION_MARKER = '...[truncated {} bytes]'


# ── Pure helpers ─────────────────────────────────────────────────────────────

def cap_oversized_strings(value, max_bytes: int, path: str = '') -> Tuple[Any, List[str]]:
    """
    Truncate any string whose UTF-8 size exceeds max_bytes.

    Returns (capped_value, [paths_truncated]). Other values pass through.
    """
    if isinstance(value, str):
        encoded = value.encode('utf-8')
        if len(encoded) <= max_bytes:
            return value, []
        dropped = len(encoded) - max_bytes
        kept = encoded[:max_bytes].decode('utf-8', errors='ignore')
        return kept + TRUNCATION_MARKER.format(dropped), [path or '$']
    if isinstance(value, dict):
        out, truncated = {}, []
        for key, item in value.items():
            out[key], paths = cap_oversized_strings(item, max_bytes, f"{path}.{key}" if path else str(key))
            truncated.extend(paths)
        return out, truncated
    if isinstance(value, list):
        out, truncated = [], []
        for i, item in enumerate(value):
            capped, paths = cap_oversized_strings(item, max_bytes, f"{path}[{i}]")
            out.append(capped)
            truncated.extend(paths)
        return out, truncated
    return value, []


def _same(old, new) -> bool:
    # Strict JSON equality: True != 1, 1 != 1.0
    return json.dumps(old, sort_keys=True) == json.dumps(new, sort_keys=True)


def diff_values(old: Dict[str, Any], new: Dict[str, Any]) -> Tuple[dict, dict, dict]:
    """Recursive (added, changed, removed) trees between two JSON objects."""
    added, changed, removed = {}, {}, {}

    for key, value in new.items():
        if key not in old:
            added[key] = value
    for key, value in old.items():
        if key not in new:
            removed[key] = value

    for key in old:
        if key not in new:
            continue
        before, after = old[key], new[key]
        if isinstance(before, dict) and isinstance(after, dict):
            sub_added, sub_changed, sub_removed = diff_values(before, after)
            if sub_added:
                added[key] = sub_added
            if sub_changed:
                changed[key] = sub_changed
            if sub_removed:
                removed[key] = sub_removed
        elif not _same(before, after):
            changed[key] = {'from': before, 'to': after}

    return added, changed, removed


def citation_ids(citations) -> List[Any]:
    ids = []
    for citation in citations or []:
        if isinstance(citation, dict) and citation.get('source_id') is not None:
            if citation['source_id'] not in ids:
                ids.append(citation['source_id'])
    return ids


def _sorted_ids(ids):
    return sorted(ids, key=lambda v: (not isinstance(v, (int, float)), v if isinstance(v, (int, float)) else str(v)))


def _step_order(codes):
    known = [code for code in NB_CODES if code in codes]
    return known + sorted(code for code in codes if code not in NB_CODES)


def diff_snapshots(from_data: Dict[str, Any], to_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Per-step diff entries; steps with nothing to report are omitted."""
    from_steps = from_data.get('nb_results', {}) or {}
    to_steps = to_data.get('nb_results', {}) or {}
    nb_diffs = []

    for code in _step_order(set(from_steps) | set(to_steps)):
        old, new = from_steps.get(code), to_steps.get(code)

        if old is None:
            nb_diffs.append({
                'nb_code': code,
                'added': new.get('payload') or {},
                'changed': {},
                'removed': {},
                'citations': {'added': _sorted_ids(citation_ids(new.get('citations'))), 'removed': []},
            })
            continue
        if new is None:
            nb_diffs.append({
                'nb_code': code,
                'added': {},
                'changed': {},
                'removed': old.get('payload') or {},
                'citations': {'added': [], 'removed': _sorted_ids(citation_ids(old.get('citations')))},
            })
            continue

        old_payload = old.get('payload') or {}
        new_payload = new.get('payload') or {}
        if not isinstance(old_payload, dict) or not isinstance(new_payload, dict):
            old_payload, new_payload = {'value': old_payload}, {'value': new_payload}
        added, changed, removed = diff_values(old_payload, new_payload)

        old_ids = citation_ids(old.get('citations'))
        new_ids = citation_ids(new.get('citations'))
        citations = {
            'added': _sorted_ids([i for i in new_ids if i not in old_ids]),
            'removed': _sorted_ids([i for i in old_ids if i not in new_ids]),
        }

        if added or changed or removed or citations['added'] or citations['removed']:
            nb_diffs.append({
                'nb_code': code,
                'added': added,
                'changed': changed,
                'removed': removed,
                'citations': citations,
            })

    return nb_diffs


def count_field_changes(diff: Dict[str, Any]) -> int:
    """Number of top-level fields touched across all steps."""
    return sum(
        len(entry['added']) + len(entry['changed']) + len(entry['removed'])
        for entry in diff.get('nb_diffs', [])
    )


def _is_change_leaf(node) -> bool:
    return isinstance(node, dict) and set(node) == {'from', 'to'}


def _flatten_changes(tree, prefix=''):
    for key, node in tree.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if _is_change_leaf(node):
            yield path, node
        elif isinstance(node, dict):
            yield from _flatten_changes(node, path)


def _short(value, limit=200):
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit] + '...'


def format_diff_display(diff: Dict[str, Any]) -> str:
    """Plain-text rendering for the CLI and logs."""
    lines = [
        '=== SNAPSHOT DIFF ===',
        f"From: Snapshot #{diff.get('from_snapshot_id')}",
        f"To: Snapshot #{diff.get('to_snapshot_id')}",
        f"Timestamp: {diff.get('timestamp', '')}",
        '',
    ]
    if not diff.get('nb_diffs'):
        lines.append('No differences found.')
        return '\n'.join(lines)

    for entry in diff['nb_diffs']:
        lines.append(f"--- {entry['nb_code']} ---")
        if entry.get('added'):
            lines.append('ADDED:')
            for key, value in entry['added'].items():
                lines.append(f"  + {key}: {_short(value)}")
        if entry.get('changed'):
            lines.append('CHANGED:')
            for path, change in _flatten_changes(entry['changed']):
                lines.append(f"  ~ {path}:")
                lines.append(f"      FROM: {_short(change['from'])}")
                lines.append(f"      TO:   {_short(change['to'])}")
        if entry.get('removed'):
            lines.append('REMOVED:')
            for key, value in entry['removed'].items():
                lines.append(f"  - {key}: {_short(value)}")
        citations = entry.get('citations') or {}
        if citations.get('added'):
            lines.append('CITATIONS ADDED: ' + ', '.join(str(i) for i in citations['added']))
        if citations.get('removed'):
            lines.append('CITATIONS REMOVED: ' + ', '.join(str(i) for i in citations['removed']))
        lines.append('')

    return '\n'.join(lines).rstrip() + '\n'


# ── Service ──────────────────────────────────────────────────────────────────

class VersioningService:

    def __init__(self, store, telemetry=None, max_field_bytes=SNAPSHOT_MAX_FIELD_BYTES,
                 freshness_days=SNAPSHOT_FRESHNESS_DAYS):
        self.store = store
        self.telemetry = telemetry
        self.max_field_bytes = max_field_bytes
        self.freshness_days = freshness_days

    def _metric(self, run_id, key, value, payload=None):
        if self.telemetry is not None:
            self.telemetry.log_metric(run_id, key, value, payload)

    # ── Snapshots ────────────────────────────────────────────────────────

    def create_snapshot(self, run_id) -> int:
        """
        Capture the run's completed NB results. Raises SnapshotUnavailable
        when there are none. When the company already has an earlier
        snapshot, the new one is diffed against it right away.
        """
        started = time.monotonic()
        session = self.store.session()
        try:
            run = self.store.get_run(session, run_id)
            results = session.scalars(
                select(NBResult)
                .where(NBResult.run_id == run_id, NBResult.status == 'completed')
                .order_by(NBResult.id)
            ).all()
            if not results:
                raise SnapshotUnavailable(f"Run {run_id} has no completed NB results", run_id=run_id)

            data = self._serialize(session, run, results)
            data, truncated = cap_oversized_strings(data, self.max_field_bytes)
            if truncated:
                logger.warning("Snapshot for run %s: truncated %d oversized field(s): %s",
                               run_id, len(truncated), ', '.join(truncated[:5]))
            data['metadata']['truncated_fields'] = truncated

            snapshot = Snapshot(
                company_id=run.company_id,
                run_id=run.id,
                data=data,
                size_bytes=len(json.dumps(data)),
            )
            session.add(snapshot)
            session.commit()
            snapshot_id = snapshot.id
            company_id = snapshot.company_id
            size_bytes = snapshot.size_bytes
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        duration_ms = int((time.monotonic() - started) * 1000)
        self._metric(run_id, 'snapshot_creation_duration_ms', duration_ms, {'snapshot_id': snapshot_id})
        self._metric(run_id, 'snapshot_size_kb', round(size_bytes / 1024, 2), {'snapshot_id': snapshot_id})
        logger.info("Snapshot %s created for run %s (%d NB results, %.1f KB)",
                    snapshot_id, run_id, len(results), size_bytes / 1024)

        previous_id = self._previous_snapshot_id(company_id, snapshot_id)
        if previous_id is not None:
            try:
                diff = self.compute_diff(previous_id, snapshot_id)
                self._metric(run_id, 'diff_field_changes', count_field_changes(diff), {
                    'from_snapshot_id': previous_id,
                    'to_snapshot_id': snapshot_id,
                    'nb_changed': len(diff['nb_diffs']),
                })
            except Exception as e:
                logger.error("Auto-diff %s → %s failed: %s", previous_id, snapshot_id, e, exc_info=True)

        return snapshot_id

    def _serialize(self, session, run, results) -> Dict[str, Any]:
        company = session.get(Company, run.company_id)
        company_ids = [cid for cid in (run.company_id, run.target_company_id) if cid is not None]
        sources = session.scalars(
            select(Source).where(Source.company_id.in_(company_ids)).order_by(Source.id)
        ).all()

        nb_results, citations = {}, {}
        tokens = 0
        for result in results:
            nb_results[result.nb_code] = result.to_dict()
            tokens += result.tokens_used or 0
            for citation in result.citations or []:
                if isinstance(citation, dict) and citation.get('source_id') is not None:
                    citations.setdefault(str(citation['source_id']), citation)

        return {
            'run_id': run.id,
            'company_id': run.company_id,
            'target_company_id': run.target_company_id,
            'timestamp': utcnow().isoformat(),
            'run_mode': run.mode,
            'nb_results': nb_results,
            'citations': citations,
            'sources': {str(source.id): source.to_dict() for source in sources},
            'metadata': {
                'company_name': company.name if company else '',
                'ticker': (company.ticker or '') if company else '',
                'run_status': run.status,
                'tokens_used': tokens,
                'cost': round(run.actual_cost or 0.0, 6),
            },
        }

    def get_snapshot(self, snapshot_id) -> Dict[str, Any]:
        session = self.store.session()
        try:
            snapshot = session.get(Snapshot, snapshot_id)
            if snapshot is None:
                raise SnapshotNotFound(snapshot_id)
            return snapshot.data
        finally:
            session.close()

    def _previous_snapshot_id(self, company_id, snapshot_id) -> Optional[int]:
        session = self.store.session()
        try:
            current = session.get(Snapshot, snapshot_id)
            if current is None:
                raise SnapshotNotFound(snapshot_id)
            return session.scalar(
                select(Snapshot.id)
                .where(
                    Snapshot.company_id == company_id,
                    Snapshot.id != snapshot_id,
                    Snapshot.created_at <= current.created_at,
                )
                .order_by(Snapshot.created_at.desc(), Snapshot.id.desc())
                .limit(1)
            )
        finally:
            session.close()

    def get_reusable_snapshot(self, company_id, freshness_days=None, now=None) -> Optional[int]:
        """
        Newest snapshot of a completed run for the company created within the
        freshness window. The boundary instant itself is still fresh.
        """
        days = self.freshness_days if freshness_days is None else freshness_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        session = self.store.session()
        try:
            return session.scalar(
                select(Snapshot.id)
                .join(Run, Run.id == Snapshot.run_id)
                .where(
                    Snapshot.company_id == company_id,
                    Run.status == 'completed',
                    Snapshot.created_at >= cutoff,
                )
                .order_by(Snapshot.created_at.desc(), Snapshot.id.desc())
                .limit(1)
            )
        finally:
            session.close()

    def get_snapshot_nb_codes(self, snapshot_id) -> List[str]:
        """Step codes captured as completed in a snapshot, in protocol order."""
        steps = self.get_snapshot(snapshot_id).get('nb_results', {})
        return _step_order({code for code, item in steps.items() if item.get('status') == 'completed'})

    def get_history(self, company_id, limit=None) -> List[Dict[str, Any]]:
        """Snapshot summaries for a company, newest first."""
        session = self.store.session()
        try:
            stmt = (
                select(Snapshot, Run)
                .join(Run, Run.id == Snapshot.run_id)
                .where(Snapshot.company_id == company_id)
                .order_by(Snapshot.created_at.desc(), Snapshot.id.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            history = []
            for snapshot, run in session.execute(stmt):
                duration = None
                if run.started_at and run.completed_at:
                    duration = int((run.completed_at - run.started_at).total_seconds())
                history.append({
                    'snapshot_id': snapshot.id,
                    'run_id': run.id,
                    'mode': run.mode,
                    'status': run.status,
                    'created': snapshot.created_at.isoformat(),
                    'created_formatted': snapshot.created_at.strftime('%Y-%m-%d %H:%M'),
                    'run_by': run.user_id,
                    'duration': duration,
                })
            return history
        finally:
            session.close()

    # ── Diffs ────────────────────────────────────────────────────────────

    def compute_diff(self, from_snapshot_id, to_snapshot_id) -> Dict[str, Any]:
        """Diff two snapshots and store the result (updating any existing row)."""
        _, diff = self._compute_and_store(from_snapshot_id, to_snapshot_id)
        return diff

    def get_or_create_diff(self, from_snapshot_id, to_snapshot_id) -> Tuple[int, Dict[str, Any]]:
        """Return (diff_id, diff) for the pair, computing it only when absent."""
        session = self.store.session()
        try:
            existing = session.scalar(
                select(Diff).where(
                    Diff.from_snapshot_id == from_snapshot_id,
                    Diff.to_snapshot_id == to_snapshot_id,
                )
            )
            if existing is not None:
                return existing.id, existing.data
        finally:
            session.close()
        return self._compute_and_store(from_snapshot_id, to_snapshot_id)

    def get_diff(self, snapshot_id, previous_snapshot_id=None) -> Optional[Dict[str, Any]]:
        """Diff of a snapshot against its predecessor (None for a company's first)."""
        if previous_snapshot_id is None:
            data = self.get_snapshot(snapshot_id)
            previous_snapshot_id = self._previous_snapshot_id(data['company_id'], snapshot_id)
            if previous_snapshot_id is None:
                return None
        _, diff = self.get_or_create_diff(previous_snapshot_id, snapshot_id)
        return diff

    def _compute_and_store(self, from_snapshot_id, to_snapshot_id):
        from_data = self.get_snapshot(from_snapshot_id)
        to_data = self.get_snapshot(to_snapshot_id)
        diff = {
            'from_snapshot_id': from_snapshot_id,
            'to_snapshot_id': to_snapshot_id,
            'timestamp': utcnow().isoformat(),
            'nb_diffs': diff_snapshots(from_data, to_data),
        }
        return self._save_diff(from_snapshot_id, to_snapshot_id, diff), diff

    def _save_diff(self, from_snapshot_id, to_snapshot_id, diff) -> int:
        pair = (Diff.from_snapshot_id == from_snapshot_id, Diff.to_snapshot_id == to_snapshot_id)
        session = self.store.session()
        try:
            row = session.scalar(select(Diff).where(*pair))
            if row is None:
                row = Diff(from_snapshot_id=from_snapshot_id, to_snapshot_id=to_snapshot_id, data=diff)
                session.add(row)
            else:
                row.data = diff
                row.created_at = utcnow()
            try:
                session.commit()
            except IntegrityError:
                # Another writer created the pair first; keep a single row
                session.rollback()
                row = session.scalar(select(Diff).where(*pair))
                row.data = diff
                session.commit()
            return row.id
        except Exception:
            session.rollback()
            logger.error("Failed to store diff %s → %s", from_snapshot_id, to_snapshot_id, exc_info=True)
            raise
        finally:
            session.close()

    format_diff_display = staticmethod(format_diff_display)
