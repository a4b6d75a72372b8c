"""
Run admin API — thin JSON wrappers over the job queue, cost service and
versioning engine. No business logic lives here.
"""
import logging
from flask import Blueprint, current_app, jsonify, request

from customer_intel.errors import (
    CostLimitExceeded, InvalidStatusTransition, RunNotFound, SnapshotNotFound, SnapshotUnavailable,
)
from customer_intel.services.job_queue import build_job_queue

logger = logging.getLogger('routes.runs')

bp = Blueprint('runs', __name__)


def _jobs():
    """JobQueue wired to the app's store (tests inject STORE / LLM_CLIENT / RQ_QUEUE)."""
    return build_job_queue(
        store=current_app.config.get('STORE'),
        llm_client=current_app.config.get('LLM_CLIENT'),
        queue=current_app.config.get('RQ_QUEUE'),
    )


@bp.errorhandler(RunNotFound)
@bp.errorhandler(SnapshotNotFound)
def _not_found(e):
    return jsonify({'error': e.message}), 404


@bp.errorhandler(InvalidStatusTransition)
@bp.errorhandler(SnapshotUnavailable)
def _conflict(e):
    return jsonify({'error': e.message, 'details': e.to_dict()}), 409


@bp.route('/health')
def health_check():
    return jsonify({'status': 'healthy'}), 200


# ── Runs ─────────────────────────────────────────────────────────────────────

@bp.route('/api/estimate', methods=['POST'])
def estimate():
    """Cost estimate without queueing anything."""
    data = request.get_json(silent=True) or {}
    if 'company_id' not in data:
        return jsonify({'error': 'company_id is required'}), 400
    result = _jobs().cost_service.estimate_cost(
        data['company_id'], data.get('target_id'),
        force_refresh=bool(data.get('force_refresh')), nb_codes=data.get('nb_codes'),
    )
    return jsonify(result)


@bp.route('/api/runs', methods=['POST'])
def queue_run():
    data = request.get_json(silent=True) or {}
    if 'company_id' not in data:
        return jsonify({'error': 'company_id is required'}), 400
    try:
        run_id = _jobs().queue_run(
            data['company_id'], data.get('target_id'), data.get('user_id'), data.get('options') or {},
        )
    except CostLimitExceeded as e:
        return jsonify({'error': e.message, 'estimate': e.estimate, 'limit': e.limit}), 402
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'run_id': run_id, 'status': 'queued'}), 202


@bp.route('/api/runs/<int:run_id>')
def run_status(run_id):
    return jsonify(_jobs().get_run_progress(run_id))


@bp.route('/api/runs/<int:run_id>/execute', methods=['POST'])
def execute_run(run_id):
    jobs = _jobs()
    success = jobs.execute_run(run_id)
    return jsonify({'run_id': run_id, 'success': success, 'progress': jobs.get_run_progress(run_id)})


@bp.route('/api/runs/<int:run_id>/cancel', methods=['POST'])
def cancel_run(run_id):
    cancelled = _jobs().cancel_run(run_id)
    if not cancelled:
        return jsonify({'run_id': run_id, 'cancelled': False,
                        'error': 'Only queued runs can be cancelled'}), 409
    return jsonify({'run_id': run_id, 'cancelled': True})


@bp.route('/api/runs/<int:run_id>/results')
def run_results(run_id):
    return jsonify(_jobs().orchestrator.get_run_results(run_id))


@bp.route('/api/runs/<int:run_id>/cost')
def run_cost(run_id):
    return jsonify(_jobs().cost_service.get_run_cost_report(run_id))


@bp.route('/api/runs/<int:run_id>/breakdown')
def run_breakdown(run_id):
    return jsonify(_jobs().get_nb_breakdown(run_id))


@bp.route('/api/runs/<int:run_id>/metrics')
def run_metrics(run_id):
    """Telemetry rows for a run, optionally narrowed by ?prefix=NB3."""
    return jsonify(_jobs().telemetry.get_metrics(run_id, prefix=request.args.get('prefix')))


@bp.route('/api/runs/<int:run_id>/snapshot', methods=['POST'])
def create_snapshot(run_id):
    snapshot_id = _jobs().versioning.create_snapshot(run_id)
    return jsonify({'run_id': run_id, 'snapshot_id': snapshot_id}), 201


# ── Costs ────────────────────────────────────────────────────────────────────

@bp.route('/api/costs/history')
def cost_history():
    return jsonify(_jobs().cost_service.get_cost_history(
        company_id=request.args.get('company_id', type=int),
        limit=request.args.get('limit', 20, type=int),
    ))


# ── Queue ────────────────────────────────────────────────────────────────────

@bp.route('/api/queue/stats')
def queue_stats():
    return jsonify(_jobs().get_queue_stats())


@bp.route('/api/queue/cleanup', methods=['POST'])
def cleanup():
    data = request.get_json(silent=True) or {}
    archived = _jobs().cleanup_old_runs(data.get('age_days'))
    return jsonify({'archived': archived})


# ── Versioning ───────────────────────────────────────────────────────────────

@bp.route('/api/companies/<int:company_id>/history')
def company_history(company_id):
    return jsonify(_jobs().versioning.get_history(company_id, limit=request.args.get('limit', type=int)))


@bp.route('/api/diffs/<int:from_id>/<int:to_id>')
def get_diff(from_id, to_id):
    versioning = _jobs().versioning
    diff_id, diff = versioning.get_or_create_diff(from_id, to_id)
    if request.args.get('format') == 'text':
        return versioning.format_diff_display(diff), 200, {'Content-Type': 'text/plain; charset=utf-8'}
    return jsonify(dict(diff, id=diff_id))
