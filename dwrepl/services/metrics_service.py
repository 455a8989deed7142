"""
Metrics service for Prometheus monitoring
"""

from typing import Optional

import structlog
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, generate_latest,
    start_http_server
)

from ..models.state import ReplicationPhase


_PHASE_VALUES = {
    ReplicationPhase.NOT_STARTED: 0,
    ReplicationPhase.SNAPSHOT_LOADED: 1,
    ReplicationPhase.INCREMENTAL_RUNNING: 2,
}


class MetricsService:
    """Service for managing Prometheus metrics"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.logger = structlog.get_logger()
        self.registry = registry or CollectorRegistry()
        self._init_metrics()

    def _init_metrics(self) -> None:
        """Initialize all Prometheus metrics"""

        # === SNAPSHOT METRICS ===
        self.snapshot_rows_loaded = Gauge(
            'dwrepl_snapshot_rows_loaded',
            'Rows produced by the snapshot load so far',
            ['table_name'],
            registry=self.registry
        )

        self.snapshot_parts_loaded_total = Counter(
            'dwrepl_snapshot_parts_loaded_total',
            'Total number of snapshot part files loaded',
            ['table_name'],
            registry=self.registry
        )

        # === INCREMENTAL METRICS ===
        self.change_files_merged_total = Counter(
            'dwrepl_change_files_merged_total',
            'Total number of change files merged into the target',
            ['table_name'],
            registry=self.registry
        )

        self.merge_duration = Histogram(
            'dwrepl_merge_duration_seconds',
            'Time spent executing one merge statement',
            ['table_name'],
            buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0],
            registry=self.registry
        )

        self.ddl_statements_applied_total = Counter(
            'dwrepl_ddl_statements_applied_total',
            'Total number of DDL statements applied to the target',
            ['table_name'],
            registry=self.registry
        )

        # === JOB METRICS ===
        self.replication_phase = Gauge(
            'dwrepl_replication_phase',
            'Replication phase (0=not-started, 1=snapshot-loaded, 2=incremental-running)',
            ['table_name'],
            registry=self.registry
        )

        self.errors_total = Counter(
            'dwrepl_errors_total',
            'Total number of errors',
            ['error_type', 'component'],
            registry=self.registry
        )

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format"""
        return generate_latest(self.registry).decode('utf-8')

    def start_server(self, port: int, host: str = '0.0.0.0') -> None:
        """Expose the registry over HTTP"""
        start_http_server(port, addr=host, registry=self.registry)
        self.logger.info("Metrics endpoint started", url=f"http://{host}:{port}/metrics")

    def set_snapshot_rows(self, table_name: str, rows: int) -> None:
        self.snapshot_rows_loaded.labels(table_name=table_name).set(rows)

    def record_snapshot_part_loaded(self, table_name: str) -> None:
        self.snapshot_parts_loaded_total.labels(table_name=table_name).inc()

    def record_change_file_merged(self, table_name: str, duration: float) -> None:
        """Record a merged change file and the merge duration"""
        self.change_files_merged_total.labels(table_name=table_name).inc()
        self.merge_duration.labels(table_name=table_name).observe(duration)

    def record_ddl_applied(self, table_name: str, count: int = 1) -> None:
        self.ddl_statements_applied_total.labels(table_name=table_name).inc(count)

    def set_phase(self, table_name: str, phase: ReplicationPhase) -> None:
        self.replication_phase.labels(table_name=table_name).set(_PHASE_VALUES[phase])

    def record_error(self, error_type: str, component: str) -> None:
        self.errors_total.labels(error_type=error_type, component=component).inc()
