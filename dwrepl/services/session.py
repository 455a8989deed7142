"""
Replication session
"""

import uuid
from typing import Optional

import structlog

from ..models.config import ReplicationConfig
from .database_service import DatabaseService
from .source_service import SourceService


SOURCE_CONNECTION = "source"
TARGET_CONNECTION = "target"


class ReplicationSession:
    """
    Per-run state shared by the replication phases

    Owns the source and target connections; both are released when the
    session is closed. The source connection is opened on first use, since
    an incremental-only run attached to an existing sink never needs it.
    """

    def __init__(self, config: ReplicationConfig, database_service: Optional[DatabaseService] = None):
        self.config = config
        self.session_id = str(uuid.uuid4())
        self.database_service = database_service or DatabaseService()
        self.source_database = config.source_database
        self.source_table = config.source_table
        self.target_table = config.source_table
        self.consistency_point: Optional[int] = None
        self.logger = structlog.get_logger().bind(session_id=self.session_id)
        self._source_service: Optional[SourceService] = None

    def __enter__(self) -> 'ReplicationSession':
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    def open(self) -> None:
        self.database_service.connect(self.config.target, TARGET_CONNECTION)
        self.logger.info("Session opened", table=self.config.table, mode=self.config.mode.value)

    @property
    def source(self) -> SourceService:
        if self._source_service is None:
            if not self.database_service.is_connected(SOURCE_CONNECTION):
                self.database_service.connect(self.config.source, SOURCE_CONNECTION)
            self._source_service = SourceService(self.database_service, SOURCE_CONNECTION)
        return self._source_service

    def resolve_consistency_point(self) -> int:
        """Resolve (once) the source TSO the snapshot and capture are anchored at"""
        if self.consistency_point is None:
            self.consistency_point = self.source.get_current_tso()
        return self.consistency_point

    def close(self) -> None:
        self.database_service.close_all_connections()
        self.logger.info("Session closed")
