"""
Services for TiDB to warehouse replication
"""

from .config_service import ConfigService
from .database_service import DatabaseService
from .source_service import SourceService
from .storage_service import (
    StorageCredentials,
    WorkspaceStorage,
    S3WorkspaceStorage,
    LocalWorkspaceStorage,
    open_workspace
)
from .marker_store import MarkerStore
from .ddl_translator import DDLTranslator, WarehouseDialect, SNOWFLAKE, REDSHIFT, compute_column_diff
from .merge_builder import MergeBuilder, deduplicate, apply_rows
from .progress_poller import LoadProgressPoller
from .stage_manager import SnapshotStageManager
from .snapshot_extractor import SnapshotExtractor
from .capture_client import ChangeCaptureClient, build_sink_uri
from .increment_service import IncrementalApplier
from .metrics_service import MetricsService
from .session import ReplicationSession

__all__ = [
    'ConfigService',
    'DatabaseService',
    'SourceService',
    'StorageCredentials',
    'WorkspaceStorage',
    'S3WorkspaceStorage',
    'LocalWorkspaceStorage',
    'open_workspace',
    'MarkerStore',
    'DDLTranslator',
    'WarehouseDialect',
    'SNOWFLAKE',
    'REDSHIFT',
    'compute_column_diff',
    'MergeBuilder',
    'deduplicate',
    'apply_rows',
    'LoadProgressPoller',
    'SnapshotStageManager',
    'SnapshotExtractor',
    'ChangeCaptureClient',
    'build_sink_uri',
    'IncrementalApplier',
    'MetricsService',
    'ReplicationSession'
]
