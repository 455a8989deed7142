"""
Configuration models for TiDB to warehouse replication
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlparse

from ..exceptions import ConfigurationError
from .state import RunMode


IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
SUPPORTED_STORAGE_SCHEMES = ("s3", "file")


def split_table_fqn(table_fqn: str) -> Tuple[str, str]:
    """Split 'database.table' into its parts"""
    parts = (table_fqn or "").split(".", 1)
    if len(parts) != 2 or not all(IDENTIFIER_RE.match(part) for part in parts):
        raise ConfigurationError(f"Table must be a fully-qualified name like mydb.mytable, got: {table_fqn!r}")
    return parts[0], parts[1]


@dataclass(frozen=True)
class SourceConfig:
    """TiDB source connection configuration"""
    host: str = "127.0.0.1"
    port: int = 4000
    user: str = "root"
    password: str = ""
    ssl_ca: Optional[str] = None
    charset: str = "utf8mb4"

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.host:
            raise ConfigurationError("Source host is required")
        if not self.user:
            raise ConfigurationError("Source user is required")
        if not (1 <= self.port <= 65535):
            raise ConfigurationError("Source port must be between 1 and 65535")

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to pymysql connection parameters"""
        params = {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'charset': self.charset,
            'autocommit': True,
        }
        if self.ssl_ca:
            params['ssl'] = {'ca': self.ssl_ca}
        return params


@dataclass(frozen=True)
class WarehouseConfig:
    """Snowflake target connection configuration"""
    account_id: str
    user: str
    password: str = ""
    database: str = ""
    schema: str = ""
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.account_id:
            raise ConfigurationError("Snowflake account id is required")
        if not self.user:
            raise ConfigurationError("Snowflake user is required")
        if not self.database:
            raise ConfigurationError("Snowflake database is required")
        if not self.schema:
            raise ConfigurationError("Snowflake schema is required")

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to snowflake.connector connection parameters"""
        params = {
            'account': self.account_id,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'schema': self.schema,
            'warehouse': self.warehouse,
        }
        if self.role:
            params['role'] = self.role
        return params


@dataclass(frozen=True)
class CaptureConfig:
    """Change-capture server configuration"""
    host: str = "127.0.0.1"
    port: int = 8300
    flush_interval: float = 60.0
    file_size: int = 64 * 1024 * 1024

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not (1 <= self.port <= 65535):
            raise ConfigurationError("Capture server port must be between 1 and 65535")
        if self.flush_interval <= 0:
            raise ConfigurationError("Capture flush interval must be positive")
        if self.file_size <= 0:
            raise ConfigurationError("Capture file size must be positive")

    @property
    def server_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class SnapshotConfig:
    """Snapshot extractor configuration"""
    dumpling_path: str = "dumpling"
    concurrency: int = 8

    def __post_init__(self):
        if self.concurrency <= 0:
            raise ConfigurationError("Snapshot concurrency must be positive")


@dataclass(frozen=True)
class MonitoringConfig:
    """Metrics exposition configuration"""
    metrics_port: Optional[int] = None

    def __post_init__(self):
        if self.metrics_port is not None and not (1 <= self.metrics_port <= 65535):
            raise ConfigurationError("Metrics port must be between 1 and 65535")


@dataclass(frozen=True)
class ReplicationConfig:
    """Main replication configuration, built once and never mutated"""
    table: str
    storage: str
    target: WarehouseConfig
    source: SourceConfig = field(default_factory=SourceConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    mode: RunMode = RunMode.FULL
    sink_uri: Optional[str] = None
    timezone: str = "System"

    def __post_init__(self):
        """Validate configuration after initialization"""
        split_table_fqn(self.table)
        if not isinstance(self.mode, RunMode):
            object.__setattr__(self, 'mode', RunMode.parse(self.mode))
        if not self.storage:
            raise ConfigurationError("Storage path is required")
        scheme = urlparse(self.storage).scheme
        if scheme not in SUPPORTED_STORAGE_SCHEMES:
            raise ConfigurationError(f"Storage must be like s3://<bucket>/<path> or file:///<path>, "
                                     f"got: {self.storage}")
        if self.sink_uri and self.mode is not RunMode.INCREMENTAL_ONLY:
            raise ConfigurationError("sink_uri is only supported in incremental-only mode")

    @property
    def source_database(self) -> str:
        return split_table_fqn(self.table)[0]

    @property
    def source_table(self) -> str:
        return split_table_fqn(self.table)[1]

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'ReplicationConfig':
        """Create ReplicationConfig from dictionary"""
        try:
            target_data = config_dict.get('target')
            if not isinstance(target_data, dict):
                raise ConfigurationError("Target must be a dictionary")

            snapshot_data = dict(config_dict.get('snapshot') or {})
            if 'snapshot_concurrency' in config_dict:
                snapshot_data['concurrency'] = config_dict['snapshot_concurrency']

            return cls(
                table=config_dict['table'],
                storage=config_dict['storage'],
                target=WarehouseConfig(**target_data),
                source=SourceConfig(**(config_dict.get('source') or {})),
                capture=CaptureConfig(**(config_dict.get('capture') or {})),
                snapshot=SnapshotConfig(**snapshot_data),
                monitoring=MonitoringConfig(**(config_dict.get('monitoring') or {})),
                mode=RunMode.parse(config_dict.get('mode', RunMode.FULL.value)),
                sink_uri=config_dict.get('sink_uri'),
                timezone=config_dict.get('timezone', "System"),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing required configuration key: {e}")
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration format: {e}")
