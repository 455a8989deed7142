"""
Data models for TiDB to warehouse replication
"""

from .config import (
    SourceConfig,
    WarehouseConfig,
    CaptureConfig,
    SnapshotConfig,
    MonitoringConfig,
    ReplicationConfig,
    split_table_fqn
)
from .schema import (
    ColumnAction,
    ColumnDescriptor,
    ColumnDiffEntry,
    TableAction,
    TableDefinition,
    TableSchemaHistory
)
from .events import (
    ChangeFlag,
    ChangeRow,
    ChangeFile,
    SchemaFile,
    sort_change_files
)
from .state import RunMode, ReplicationPhase

__all__ = [
    'SourceConfig',
    'WarehouseConfig',
    'CaptureConfig',
    'SnapshotConfig',
    'MonitoringConfig',
    'ReplicationConfig',
    'split_table_fqn',
    'ColumnAction',
    'ColumnDescriptor',
    'ColumnDiffEntry',
    'TableAction',
    'TableDefinition',
    'TableSchemaHistory',
    'ChangeFlag',
    'ChangeRow',
    'ChangeFile',
    'SchemaFile',
    'sort_change_files',
    'RunMode',
    'ReplicationPhase'
]
