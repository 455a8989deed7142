"""
Replication phase orchestrator

Drives one replication job through snapshot and incremental phases. The
phase is derived from the workspace markers on every start, so a job
killed at any point resumes without redoing a finished snapshot or
registering a second capture job.
"""

import threading
import time
from typing import Optional
from urllib.parse import urlparse

import structlog

from .exceptions import ReplicationException
from .models.config import ReplicationConfig
from .models.state import ReplicationPhase, RunMode
from .services.capture_client import ChangeCaptureClient, build_sink_uri
from .services.ddl_translator import DDLTranslator
from .services.increment_service import IncrementalApplier
from .services.marker_store import MarkerStore
from .services.merge_builder import MergeBuilder
from .services.metrics_service import MetricsService
from .services.session import ReplicationSession, TARGET_CONNECTION
from .services.snapshot_extractor import SnapshotExtractor
from .services.stage_manager import SnapshotStageManager, SNAPSHOT_PREFIX
from .services.storage_service import WorkspaceStorage, open_workspace


INCREMENT_PREFIX = "increment"


class ReplicationOrchestrator:
    """Runs the snapshot and incremental phases of one replication job"""

    def __init__(self, config: ReplicationConfig, session: ReplicationSession,
                 storage: Optional[WorkspaceStorage] = None,
                 capture_client: Optional[ChangeCaptureClient] = None,
                 extractor: Optional[SnapshotExtractor] = None,
                 metrics: Optional[MetricsService] = None,
                 stop_event: Optional[threading.Event] = None):
        self.config = config
        self.session = session
        self.storage = storage or open_workspace(config.storage)
        self.markers = MarkerStore(self.storage)
        self.capture_client = capture_client or ChangeCaptureClient(config.capture)
        self.extractor = extractor or SnapshotExtractor(config.source, config.snapshot)
        self.metrics = metrics
        self.translator = DDLTranslator()
        self.stop_event = stop_event or threading.Event()
        self.logger = structlog.get_logger().bind(session_id=session.session_id, table=config.table)

    def request_shutdown(self) -> None:
        self.stop_event.set()

    def run(self) -> ReplicationPhase:
        """
        Run the job according to the configured mode

        Returns:
            The phase derived from the markers at start

        Raises:
            ReplicationException: on any fatal error; the load marker is only written after a full load
        """
        mode = self.config.mode
        snapshot_loaded = self.markers.snapshot_loaded()
        capture_registered = self.markers.capture_registered()
        changefeed = self.markers.read_changefeed_record()
        phase = ReplicationPhase.from_markers(snapshot_loaded, capture_registered)
        self.logger.info("Replication starting", phase=phase.value, mode=mode.value,
                         snapshot_loaded=snapshot_loaded, capture_registered=capture_registered,
                         changefeed_recorded=changefeed is not None)
        self._set_phase(phase)

        # A registered changefeed pins the consistency point of any snapshot still to load
        if changefeed and changefeed.get('start_ts') and self.session.consistency_point is None:
            self.session.consistency_point = int(changefeed['start_ts'])

        snapshot_needed = mode.includes_snapshot and not snapshot_loaded
        if snapshot_needed:
            self.session.resolve_consistency_point()
        elif mode.includes_snapshot:
            self.logger.info("Snapshot already loaded, skipping snapshot phase")

        sink_url = None
        if mode.includes_incremental:
            sink_url = self.ensure_capture(capture_registered or changefeed is not None)

        if snapshot_needed:
            self.run_snapshot()
            self._set_phase(ReplicationPhase.SNAPSHOT_LOADED)

        if mode.includes_incremental:
            self._set_phase(ReplicationPhase.INCREMENTAL_RUNNING)
            self.run_incremental(sink_url)

        return phase

    def ensure_capture(self, capture_registered: bool) -> str:
        """Register the capture job when needed and return the sink URL to consume"""
        if self.config.mode is RunMode.INCREMENTAL_ONLY and self.config.sink_uri:
            self.logger.info("Attaching to existing sink", sink_uri=_strip_query(self.config.sink_uri))
            return self.config.sink_uri

        sink_url = self.storage.url_for(INCREMENT_PREFIX)
        if capture_registered:
            self.logger.info("Capture job already registered, skipping registration")
            return sink_url

        start_ts = self._capture_start_ts()
        sink_uri = build_sink_uri(sink_url, self.config.capture, self.storage.credentials)
        changefeed_id = self.capture_client.create_changefeed(sink_uri, self.config.table, start_ts)
        self.markers.mark_changefeed_created({
            'changefeed_id': changefeed_id,
            'session_id': self.session.session_id,
            'start_ts': start_ts,
            'sink_url': sink_url,
        })
        self.logger.info("Capture job registered", changefeed_id=changefeed_id, start_ts=start_ts)
        return sink_url

    def _capture_start_ts(self) -> int:
        # Capture starts at the consistency point of a finished snapshot
        if self.session.consistency_point is None:
            info = self.markers.read_snapshot_info()
            if info and info.get('consistency_point'):
                self.session.consistency_point = int(info['consistency_point'])
        return self.session.resolve_consistency_point()

    def run_snapshot(self) -> int:
        """Create the target table, dump the source and bulk-load the dump"""
        tso = self.session.resolve_consistency_point()
        columns = self.session.source.get_table_columns(self.session.source_database, self.session.source_table)

        create_sql = self.translator.render_create_table(self.session.target_table, columns)
        self.logger.info("Preparing target table", sql=create_sql)
        try:
            self.session.database_service.execute_update(create_sql, connection_name=TARGET_CONNECTION)
        except Exception as e:
            raise ReplicationException(f"Failed to create target table {self.session.target_table}: {e}")

        self.extractor.extract(self.config.table, self.storage.url_for(SNAPSHOT_PREFIX), tso,
                               self.storage.credentials)

        stage_manager = SnapshotStageManager(
            self.session.database_service,
            self.storage,
            self.config.target,
            self.session.source_database,
            self.session.source_table,
            self.session.target_table,
            connection_name=TARGET_CONNECTION,
            metrics=self.metrics,
        )
        started = time.time()
        rows = stage_manager.load(on_progress=self._report_progress)

        self.markers.mark_snapshot_loaded({
            'session_id': self.session.session_id,
            'consistency_point': tso,
            'rows_loaded': rows,
            'duration_seconds': round(time.time() - started, 3),
        })
        return rows

    def run_incremental(self, sink_url: str) -> None:
        applier = IncrementalApplier(
            self.session.database_service,
            open_workspace(_strip_query(sink_url)),
            self.session.source_database,
            self.session.source_table,
            self.session.target_table,
            poll_interval=self.config.capture.flush_interval / 5,
            translator=self.translator,
            merge_builder=MergeBuilder(),
            timezone=self.config.timezone,
            connection_name=TARGET_CONNECTION,
            metrics=self.metrics,
        )
        applier.run(self.stop_event)

    def _report_progress(self, rows: int) -> None:
        self.logger.info("Snapshot load progress", rows_loaded=rows)
        if self.metrics is not None:
            self.metrics.set_snapshot_rows(self.session.target_table, rows)

    def _set_phase(self, phase: ReplicationPhase) -> None:
        if self.metrics is not None:
            self.metrics.set_phase(self.session.target_table, phase)


def _strip_query(uri: str) -> str:
    """Drop the query string (which may carry credentials) from a sink URI"""
    return urlparse(uri)._replace(query="").geturl()
