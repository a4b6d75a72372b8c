"""
Structured error taxonomy.

Every error exposes to_dict() for JSON serialization into the run's error
blob or the telemetry store. Chaining uses Python's __cause__, so wrapping a
low-level failure keeps the root cause reachable:

    try:
        resolve(url)
    except CitationResolverError as e:
        raise SynthesisPhaseError('citations', run_id, 'Citation step failed') from e
"""
import traceback

from customer_intel.database import utcnow


TRACE_EXCERPT_CHARS = 500


class IntelError(Exception):
    """Base for all structured pipeline errors."""
    error_type = 'intel_error'

    def __init__(self, message, run_id=None, context=None, cause=None):
        super().__init__(message)
        self.message = message
        self.run_id = run_id
        self.context = context or {}
        self.timestamp = utcnow().isoformat()
        if cause is not None:
            self.__cause__ = cause

    def _identifiers(self):
        return {}

    def cause_chain(self):
        """List of {type, message} for each chained cause, nearest first."""
        chain = []
        seen = set()
        current = self.__cause__
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            chain.append({'type': type(current).__name__, 'message': str(current)})
            current = current.__cause__
        return chain

    def to_dict(self):
        data = {
            'error_type': self.error_type,
            'run_id': self.run_id,
            'message': self.message,
            'context': self.context,
            'timestamp': self.timestamp,
        }
        data.update(self._identifiers())
        chain = self.cause_chain()
        if chain:
            data['cause'] = chain
        return data


class SynthesisPhaseError(IntelError):
    """A named pipeline phase failed beyond local recovery."""
    error_type = 'synthesis_phase_failure'

    def __init__(self, phase, run_id, message, context=None, cause=None):
        super().__init__(message, run_id=run_id, context=context, cause=cause)
        self.phase = phase

    def trace_excerpt(self):
        if self.__traceback__ is not None:
            text = ''.join(traceback.format_exception(type(self), self, self.__traceback__, chain=False))
        elif self.__cause__ is not None and self.__cause__.__traceback__ is not None:
            cause = self.__cause__
            text = ''.join(traceback.format_exception(type(cause), cause, cause.__traceback__, chain=False))
        else:
            text = ''
        return text[:TRACE_EXCERPT_CHARS]

    def _identifiers(self):
        return {'phase': self.phase, 'trace_excerpt': self.trace_excerpt()}


class CitationResolverError(IntelError):
    """A citation URL or source lookup could not be resolved."""
    error_type = 'citation_resolver_failure'

    def __init__(self, url, run_id, resolution_step, message, context=None, cause=None):
        super().__init__(message, run_id=run_id, context=context, cause=cause)
        self.url = url
        self.resolution_step = resolution_step

    def _identifiers(self):
        return {'url': self.url, 'resolution_step': self.resolution_step}


class TelemetryWriteError(IntelError):
    """A telemetry row could not be written."""
    error_type = 'telemetry_write_failure'

    def __init__(self, metric_key, run_id, metric_value=None, message='', context=None, cause=None):
        super().__init__(message or f"Failed to write metric '{metric_key}'",
                         run_id=run_id, context=context, cause=cause)
        self.metric_key = metric_key
        self.metric_value = metric_value

    def _identifiers(self):
        return {'metric_key': self.metric_key, 'metric_value': self.metric_value}


class CostLimitExceeded(IntelError):
    """Raised by queue_run when the estimate is over the hard limit."""
    error_type = 'cost_exceeds_limit'

    def __init__(self, estimate, limit):
        total = estimate.get('total_cost', 0.0)
        super().__init__(
            f"Estimated cost ${total:.2f} exceeds hard limit ${limit:.2f}",
            context={'company_id': estimate.get('company_id')},
        )
        self.estimate = estimate
        self.limit = limit

    def _identifiers(self):
        return {'estimated_cost': self.estimate.get('total_cost'), 'limit': self.limit,
                'estimate': self.estimate}


class InvalidStatusTransition(IntelError):
    error_type = 'invalid_status_transition'

    def __init__(self, run_id, from_status, to_status):
        super().__init__(f"Run {run_id}: cannot move from '{from_status}' to '{to_status}'",
                         run_id=run_id)
        self.from_status = from_status
        self.to_status = to_status

    def _identifiers(self):
        return {'from_status': self.from_status, 'to_status': self.to_status}


class RunNotFound(IntelError, LookupError):
    error_type = 'run_not_found'

    def __init__(self, run_id):
        super().__init__(f"Run {run_id} not found", run_id=run_id)


class SnapshotNotFound(IntelError, LookupError):
    error_type = 'snapshot_not_found'

    def __init__(self, snapshot_id):
        super().__init__(f"Snapshot {snapshot_id} not found", context={'snapshot_id': snapshot_id})
        self.snapshot_id = snapshot_id


class SnapshotUnavailable(IntelError):
    """The run has no completed NB results to capture."""
    error_type = 'snapshot_unavailable'
