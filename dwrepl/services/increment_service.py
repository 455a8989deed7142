"""
Incremental merge loop

Consumes the change-capture storage sink for one table: schema files are
translated into DDL, data files are merged into the target table in
(table version, date, index) order. A checkpoint object in the sink
records the last applied schema and data file so a restart neither
replays DDL nor rescans the whole history.
"""

import json
import threading
import time
from typing import List, Optional, Union

import structlog

from ..exceptions import MergeError, ReplicationException
from ..models.events import ChangeFile, SchemaFile, sort_change_files
from ..models.schema import TableAction, TableDefinition, TableSchemaHistory
from ..utils.sql_builder import SQLBuilder
from .database_service import DatabaseService
from .ddl_translator import DDLTranslator
from .merge_builder import MergeBuilder
from .metrics_service import MetricsService
from .storage_service import WorkspaceStorage


CHECKPOINT_KEY = "dwrepl/checkpoint.json"


class IncrementalApplier:
    """Applies change files from the capture sink to the target table"""

    def __init__(self, database_service: DatabaseService, storage: WorkspaceStorage,
                 source_database: str, source_table: str, target_table: str,
                 poll_interval: float, translator: Optional[DDLTranslator] = None,
                 merge_builder: Optional[MergeBuilder] = None, timezone: str = "System",
                 connection_name: str = "target", metrics: Optional[MetricsService] = None):
        self.database_service = database_service
        self.storage = storage
        self.source_database = source_database
        self.source_table = source_table
        self.target_table = target_table
        self.poll_interval = poll_interval
        self.translator = translator or DDLTranslator()
        self.merge_builder = merge_builder or MergeBuilder()
        self.timezone = timezone
        self.connection_name = connection_name
        self.metrics = metrics
        self.stage_name = f"increment_stage_{source_table}"
        self.history = TableSchemaHistory(schema=source_database, table=source_table)
        self.logger = structlog.get_logger()
        self.last_schema_file: Optional[SchemaFile] = None
        self.last_change_file: Optional[ChangeFile] = None
        self._table_schema_path: Optional[str] = None
        self.files_merged = 0

    def run(self, stop_event: threading.Event) -> None:
        """Poll the sink and apply changes until stop_event is set"""
        self.restore_checkpoint()
        self._prepare()
        self.logger.info("Incremental replication started", table=self.target_table,
                         sink=self.storage.uri, poll_interval=self.poll_interval)
        try:
            while not stop_event.is_set():
                self.apply_pending()
                stop_event.wait(self.poll_interval)
        finally:
            try:
                self._execute(SQLBuilder.build_drop_stage(self.stage_name))
            except ReplicationException as e:
                self.logger.error("Failed to drop increment stage", stage_name=self.stage_name, error=str(e))
        self.logger.info("Incremental replication stopped", table=self.target_table,
                         files_merged=self.files_merged)

    def _prepare(self) -> None:
        if self.timezone and self.timezone != "System":
            self._execute(SQLBuilder.build_set_timezone(self.timezone))
        credentials = self.storage.credentials
        if credentials is None:
            raise ReplicationException(f"Incremental replication requires an s3:// sink, got: {self.storage.uri}")
        self._execute(SQLBuilder.build_create_stage(
            self.stage_name,
            self.storage.url_for() + "/",
            credentials.access_key_id,
            credentials.secret_access_key,
            credentials.session_token,
        ))
        self.logger.info("Created increment stage", stage_name=self.stage_name)

    def restore_checkpoint(self) -> None:
        """Resume from the checkpoint left by a previous run, if any"""
        if not self.storage.exists(CHECKPOINT_KEY):
            return
        try:
            checkpoint = json.loads(self.storage.read_text(CHECKPOINT_KEY))
        except ValueError as e:
            raise ReplicationException(f"Corrupt increment checkpoint {self.storage.url_for(CHECKPOINT_KEY)}: {e}")

        schema_path = checkpoint.get('schema_file')
        if schema_path:
            self.last_schema_file = SchemaFile.parse(schema_path, self.source_database, self.source_table)
        table_schema_path = checkpoint.get('table_schema_file')
        if table_schema_path:
            self.history.advance(self._read_definition(table_schema_path))
            self._table_schema_path = table_schema_path
        change_path = checkpoint.get('change_file')
        if change_path:
            self.last_change_file = ChangeFile.parse(change_path, self.source_database, self.source_table)

        self.logger.info("Restored increment checkpoint", schema_file=schema_path, change_file=change_path)

    def _save_checkpoint(self) -> None:
        checkpoint = {
            'schema_file': self.last_schema_file.path if self.last_schema_file else None,
            'table_schema_file': self._table_schema_path,
            'change_file': self.last_change_file.path if self.last_change_file else None,
        }
        self.storage.write_text(CHECKPOINT_KEY, json.dumps(checkpoint, sort_keys=True))

    def pending_items(self) -> List[Union[SchemaFile, ChangeFile]]:
        """Schema and data files not applied yet, in application order"""
        schema_files, data_files = sort_change_files(self.storage.list(), self.source_database, self.source_table)
        items = [(sf.table_version, 0, sf) for sf in schema_files
                 if self.last_schema_file is None or sf.table_version > self.last_schema_file.table_version]
        items.extend((df.table_version, 1, df) for df in data_files
                     if self.last_change_file is None or df > self.last_change_file)
        # A version's schema file sorts before its data files
        items.sort(key=lambda item: (item[0], item[1], item[2]))
        return [item for _, _, item in items]

    def apply_pending(self) -> int:
        """Apply every pending schema and data file; returns the number of data files merged"""
        merged = 0
        for item in self.pending_items():
            if isinstance(item, SchemaFile):
                self.apply_schema_file(item)
            else:
                self.apply_change_file(item)
                merged += 1
        return merged

    def _read_definition(self, path: str) -> TableDefinition:
        try:
            return TableDefinition.from_dict(json.loads(self.storage.read_text(path)))
        except ValueError as e:
            raise ReplicationException(f"Invalid schema file {path}: {e}")

    def apply_schema_file(self, schema_file: SchemaFile) -> None:
        definition = self._read_definition(schema_file.path)

        if schema_file.database_level and definition.action is not TableAction.DROP_SCHEMA:
            self.logger.debug("Skipping database schema file", path=schema_file.path, action=definition.action.value)
        elif self.history.current is None and not schema_file.database_level:
            self.logger.info("Using table schema as baseline", path=schema_file.path, version=definition.version)
        else:
            ddls = self.translator.translate(self.history.current_columns, definition)
            for index, ddl in enumerate(ddls):
                self.logger.info("Applying DDL", table=self.target_table, sql=ddl, query=definition.query)
                try:
                    self._execute(ddl)
                except ReplicationException as e:
                    raise ReplicationException(
                        f"DDL statement {index + 1} of {len(ddls)} for {schema_file.path} failed, "
                        f"{index} already applied: {e}")
            if self.metrics is not None and ddls:
                self.metrics.record_ddl_applied(self.target_table, len(ddls))

        if not schema_file.database_level:
            self.history.advance(definition)
            self._table_schema_path = schema_file.path
        self.last_schema_file = schema_file
        self._save_checkpoint()

    def apply_change_file(self, change_file: ChangeFile) -> None:
        definition = self.history.current
        if definition is None:
            raise MergeError(f"No table schema known before change file {change_file.path}")

        sql = self.merge_builder.build(definition, self.stage_name, change_file.path)
        started = time.time()
        try:
            self.database_service.execute_update(sql, connection_name=self.connection_name)
        except Exception as e:
            raise MergeError(f"Failed to merge change file {change_file.path}: {e}")
        duration = time.time() - started

        self.last_change_file = change_file
        self.files_merged += 1
        self._save_checkpoint()
        if self.metrics is not None:
            self.metrics.record_change_file_merged(self.target_table, duration)
        self.logger.info("Merged change file", path=change_file.path, version=change_file.table_version,
                         duration=round(duration, 3))

    def _execute(self, sql: str) -> None:
        try:
            self.database_service.execute_update(sql, connection_name=self.connection_name)
        except Exception as e:
            raise ReplicationException(f"Statement failed on {self.connection_name}: {e}")
