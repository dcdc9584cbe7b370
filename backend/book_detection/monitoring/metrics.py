"""Prometheus metrics for the detection job pipeline"""

import logging
from typing import Dict, List
from collections import defaultdict
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)


# Job outcome metrics
detection_jobs_total = Counter(
    'detection_jobs_total',
    'Total number of detection job runs by outcome',
    ['status', 'error_code']
)

detection_job_duration_seconds = Histogram(
    'detection_job_duration_seconds',
    'Wall-clock time of a detection job run',
    ['status'],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

detection_stage_transitions_total = Counter(
    'detection_stage_transitions_total',
    'Persisted stage transitions',
    ['stage']
)

detection_discarded_writes_total = Counter(
    'detection_discarded_writes_total',
    'Pipeline writes rejected because the run was no longer current',
    ['operation']
)

detection_job_retries_total = Counter(
    'detection_job_retries_total',
    'Retry requests by result',
    ['result']
)

# Sweeper metrics
sweeper_runs_total = Counter(
    'sweeper_runs_total',
    'Total sweeper runs',
    ['sweeper']
)

sweeper_jobs_total = Counter(
    'sweeper_jobs_total',
    'Jobs handled by sweepers',
    ['sweeper', 'status']
)

sweeper_duration_seconds = Histogram(
    'sweeper_duration_seconds',
    'Time spent in one sweeper run',
    ['sweeper'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

storage_cleanup_failures_total = Counter(
    'storage_cleanup_failures_total',
    'Stored images that could not be removed during cleanup'
)


class MetricsCollector:
    """Collector for pipeline metrics with in-memory latency samples"""

    def __init__(self):
        self.latencies: Dict[str, List[float]] = defaultdict(list)
        self.max_latency_samples = 1000  # Keep last N samples for percentile calculation

    def record_job_outcome(self, status: str, duration_seconds: float, error_code: str = None):
        """Record the terminal outcome of one pipeline run"""
        detection_jobs_total.labels(
            status=status,
            error_code=error_code or "none"
        ).inc()

        detection_job_duration_seconds.labels(status=status).observe(duration_seconds)

        self.latencies[status].append(duration_seconds * 1000)  # Convert to ms
        if len(self.latencies[status]) > self.max_latency_samples:
            self.latencies[status].pop(0)

    def record_stage_transition(self, stage: str):
        """Record a persisted stage transition"""
        detection_stage_transitions_total.labels(stage=stage).inc()

    def record_discarded_write(self, operation: str):
        """Record a write dropped because its run was superseded"""
        detection_discarded_writes_total.labels(operation=operation).inc()

    def record_retry(self, result: str):
        """Record a retry request (accepted or a rejection reason)"""
        detection_job_retries_total.labels(result=result).inc()

    def record_sweeper_run(
        self,
        sweeper: str,
        processed: int,
        errored: int,
        duration_seconds: float
    ):
        """Record one Timeout Reaper or Retention Cleaner run"""
        sweeper_runs_total.labels(sweeper=sweeper).inc()
        sweeper_jobs_total.labels(sweeper=sweeper, status="processed").inc(processed)
        sweeper_jobs_total.labels(sweeper=sweeper, status="errored").inc(errored)
        sweeper_duration_seconds.labels(sweeper=sweeper).observe(duration_seconds)

    def record_storage_cleanup_failure(self):
        storage_cleanup_failures_total.inc()

    def get_latency_percentiles(self, status: str = "completed") -> Dict[str, float]:
        """Calculate job latency percentiles from stored samples"""
        latencies = self.latencies.get(status, [])

        if not latencies:
            return {"p50": 0.0, "p90": 0.0, "p95": 0.0, "p99": 0.0}

        sorted_latencies = sorted(latencies)
        n = len(sorted_latencies)

        def percentile(p: float) -> float:
            k = (n - 1) * p
            f = int(k)
            c = min(f + 1, n - 1)
            return sorted_latencies[f] + (k - f) * (sorted_latencies[c] - sorted_latencies[f])

        return {
            "p50": percentile(0.50),
            "p90": percentile(0.90),
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


# Global metrics collector instance
metrics_collector = MetricsCollector()

