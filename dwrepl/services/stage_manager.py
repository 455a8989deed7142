"""
Snapshot stage manager

Loads the snapshot part files produced by the extractor into the target
table through a temporary external stage.
"""

import re
import uuid
from typing import List, Optional

import structlog

from ..exceptions import BulkLoadError, SnapshotFilesNotFoundError, StorageError
from ..models.config import WarehouseConfig
from ..utils.sql_builder import SQLBuilder
from .database_service import DatabaseService
from .metrics_service import MetricsService
from .progress_poller import LoadProgressPoller, ProgressCallback, POLL_INTERVAL
from .storage_service import WorkspaceStorage


SNAPSHOT_PREFIX = "snapshot"


class SnapshotStageManager:
    """Creates the snapshot stage, COPYs every part file and drops the stage"""

    def __init__(self, database_service: DatabaseService, storage: WorkspaceStorage,
                 warehouse_config: WarehouseConfig, source_database: str, source_table: str,
                 target_table: str, connection_name: str = "target",
                 poll_interval: float = POLL_INTERVAL, metrics: Optional[MetricsService] = None):
        self.database_service = database_service
        self.storage = storage
        self.warehouse_config = warehouse_config
        self.source_database = source_database
        self.source_table = source_table
        self.target_table = target_table
        self.connection_name = connection_name
        self.progress_connection_name = f"{connection_name}_progress"
        self.poll_interval = poll_interval
        self.metrics = metrics
        self.stage_name = f"snapshot_stage_{source_table}"
        self.logger = structlog.get_logger()
        self._part_pattern = re.compile(
            r"^{}\.{}\.(\d+)\.csv$".format(re.escape(source_database), re.escape(source_table)))

    def list_parts(self) -> List[str]:
        """Snapshot part files (relative to the snapshot prefix) ordered by part number"""
        parts = []
        for key in self.storage.list(f"{SNAPSHOT_PREFIX}/"):
            name = key[len(SNAPSHOT_PREFIX) + 1:]
            match = self._part_pattern.match(name)
            if match:
                parts.append((int(match.group(1)), name))
        return [name for _, name in sorted(parts)]

    def load(self, on_progress: Optional[ProgressCallback] = None) -> int:
        """
        Load every snapshot part into the target table

        Args:
            on_progress: Optional callback receiving the rows loaded so far
                across all parts, including the COPY statement in flight

        Returns:
            Total rows loaded

        Raises:
            SnapshotFilesNotFoundError: if no part file matches
            BulkLoadError: if the stage or a COPY statement fails
        """
        credentials = self.storage.credentials
        if credentials is None:
            raise BulkLoadError(f"Snapshot loading requires an s3:// workspace, got: {self.storage.uri}")

        self._execute(SQLBuilder.build_create_stage(
            self.stage_name,
            self.storage.url_for(SNAPSHOT_PREFIX) + "/",
            credentials.access_key_id,
            credentials.secret_access_key,
            credentials.session_token,
        ))
        self.logger.info("Created snapshot stage", stage_name=self.stage_name)

        try:
            try:
                parts = self.list_parts()
            except StorageError as e:
                raise BulkLoadError(f"Failed to list snapshot files: {e}")
            if not parts:
                raise SnapshotFilesNotFoundError(
                    f"No snapshot files found for {self.source_database}.{self.source_table} "
                    f"under {self.storage.url_for(SNAPSHOT_PREFIX)}")

            if on_progress is not None:
                try:
                    self.database_service.connect(self.warehouse_config, self.progress_connection_name)
                except Exception as e:
                    self.logger.warning("Progress connection unavailable, loading without progress",
                                        connection_name=self.progress_connection_name, error=str(e))
                    on_progress = None

            total_rows = 0
            for part in parts:
                total_rows += self._copy_part(part, on_progress, total_rows)
            if on_progress is not None:
                on_progress(total_rows)

            self.logger.info("Snapshot loaded", table=self.target_table, parts=len(parts), rows=total_rows)
            return total_rows
        finally:
            self.database_service.close_connection(self.progress_connection_name)
            try:
                self._execute(SQLBuilder.build_drop_stage(self.stage_name))
                self.logger.info("Dropped snapshot stage", stage_name=self.stage_name)
            except BulkLoadError as e:
                self.logger.error("Failed to drop snapshot stage", stage_name=self.stage_name, error=str(e))

    def _copy_part(self, part: str, on_progress: Optional[ProgressCallback], offset: int = 0) -> int:
        request_id = str(uuid.uuid4())
        sql = SQLBuilder.build_copy_into(self.target_table, self.stage_name, part, request_id)
        horizon = None
        callback = None
        if on_progress is not None:
            horizon = self._query(SQLBuilder.build_server_timestamp_query())[0][0]

            # Polled rows cover this part only; report them on top of the earlier parts
            def callback(rows: int) -> None:
                on_progress(offset + rows)

        self.logger.info("Loading snapshot part", part=part, request_id=request_id)
        poller = LoadProgressPoller(self.database_service, self.progress_connection_name,
                                    request_id, horizon, callback, interval=self.poll_interval)
        with poller:
            result = self._query(sql)

        # COPY returns one row per file: (file, status, rows_parsed, rows_loaded, ...)
        rows_loaded = 0
        for row in result or []:
            if len(row) > 3 and row[3] is not None:
                rows_loaded += int(row[3])
            if len(row) > 1 and str(row[1]).upper() == "LOAD_FAILED":
                raise BulkLoadError(f"Failed to load snapshot part {part}: {row}")
        self.logger.info("Loaded snapshot part", part=part, rows=rows_loaded)
        if self.metrics is not None:
            self.metrics.record_snapshot_part_loaded(self.target_table)
        return rows_loaded

    def _query(self, sql: str):
        try:
            return self.database_service.execute_query(sql, connection_name=self.connection_name)
        except Exception as e:
            raise BulkLoadError(f"Bulk load statement failed: {e}")

    def _execute(self, sql: str) -> None:
        try:
            self.database_service.execute_update(sql, connection_name=self.connection_name)
        except Exception as e:
            raise BulkLoadError(f"Stage statement failed: {e}")
