"""
Command-line admin surface.

    python -m customer_intel.cli queue-run 12 --target 31 --user analyst
    python -m customer_intel.cli execute-run 7
    python -m customer_intel.cli run-status 7 --watch
    python -m customer_intel.cli diff 4 9
    python -m customer_intel.cli cost-history --company 12

Every sub-command is a single call into the job queue / versioning engine;
results are printed as JSON (the diff command prints text by default).
"""
import argparse
import json
import sys

from customer_intel.errors import CostLimitExceeded, IntelError


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def build_parser():
    parser = argparse.ArgumentParser(prog='customer-intel', description='NB research pipeline admin')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL for this invocation')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('queue-run', help='Estimate and queue a run')
    p.add_argument('company_id', type=int)
    p.add_argument('--target', type=int, default=None, help='Comparison target company id')
    p.add_argument('--user', default=None)
    p.add_argument('--force-refresh', action='store_true', help='Disable snapshot reuse')
    p.add_argument('--nb', action='append', dest='nb_codes', help='Run only these NB codes (partial mode)')
    p.add_argument('--no-enqueue', action='store_true', help='Record the run without handing it to RQ')

    p = sub.add_parser('execute-run', help='Execute a queued run inline')
    p.add_argument('run_id', type=int)

    p = sub.add_parser('run-status', help='Show run progress')
    p.add_argument('run_id', type=int)
    p.add_argument('--watch', action='store_true', help='Poll until the run finishes')
    p.add_argument('--interval', type=float, default=5.0)
    p.add_argument('--timeout', type=float, default=None)

    p = sub.add_parser('breakdown', help='Per-step status, tokens and cost for a run')
    p.add_argument('run_id', type=int)

    p = sub.add_parser('cancel-run', help='Cancel a queued run')
    p.add_argument('run_id', type=int)

    sub.add_parser('queue-stats', help='Counts by status and average timings')

    p = sub.add_parser('cost-history', help='Recent completed runs, estimated vs actual cost')
    p.add_argument('--company', type=int, default=None)
    p.add_argument('--limit', type=int, default=20)

    p = sub.add_parser('cleanup', help='Archive old completed runs')
    p.add_argument('--age-days', type=int, default=None)

    p = sub.add_parser('create-snapshot', help='Snapshot a run\'s completed NB results')
    p.add_argument('run_id', type=int)

    p = sub.add_parser('diff', help='Diff two snapshots')
    p.add_argument('from_snapshot_id', type=int)
    p.add_argument('to_snapshot_id', type=int)
    p.add_argument('--json', action='store_true')

    return parser


def run_command(args, jobs):
    """Dispatch one parsed command. Returns the process exit code."""
    if args.command == 'queue-run':
        options = {'force_refresh': args.force_refresh, 'enqueue': not args.no_enqueue}
        if args.nb_codes:
            options['nb_codes'] = args.nb_codes
        try:
            run_id = jobs.queue_run(args.company_id, args.target, args.user, options)
        except CostLimitExceeded as e:
            _print(e.to_dict())
            return 2
        _print({'run_id': run_id, 'status': 'queued'})
    elif args.command == 'execute-run':
        success = jobs.execute_run(args.run_id)
        _print(jobs.get_run_progress(args.run_id))
        return 0 if success else 1
    elif args.command == 'run-status':
        if args.watch:
            progress = jobs.watch_run_progress(args.run_id, interval=args.interval, timeout=args.timeout,
                                               on_update=_print)
            return 0 if progress['status'] == 'completed' else 1
        _print(jobs.get_run_progress(args.run_id))
    elif args.command == 'breakdown':
        _print(jobs.get_nb_breakdown(args.run_id))
    elif args.command == 'cancel-run':
        cancelled = jobs.cancel_run(args.run_id)
        _print({'run_id': args.run_id, 'cancelled': cancelled})
        return 0 if cancelled else 1
    elif args.command == 'queue-stats':
        _print(jobs.get_queue_stats())
    elif args.command == 'cost-history':
        _print(jobs.cost_service.get_cost_history(company_id=args.company, limit=args.limit))
    elif args.command == 'cleanup':
        _print({'archived': jobs.cleanup_old_runs(args.age_days)})
    elif args.command == 'create-snapshot':
        _print({'run_id': args.run_id, 'snapshot_id': jobs.versioning.create_snapshot(args.run_id)})
    elif args.command == 'diff':
        _, diff = jobs.versioning.get_or_create_diff(args.from_snapshot_id, args.to_snapshot_id)
        if args.json:
            _print(diff)
        else:
            print(jobs.versioning.format_diff_display(diff))
    return 0


def main(argv=None):
    from customer_intel.logging_config import configure_logging
    from customer_intel.services.job_queue import build_job_queue

    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    try:
        return run_command(args, build_job_queue())
    except IntelError as e:
        _print(e.to_dict())
        return 1


if __name__ == '__main__':
    sys.exit(main())
