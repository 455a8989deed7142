"""
Database service for TiDB to warehouse replication

Holds named connections to the TiDB source (pymysql) and the Snowflake
target (snowflake-connector-python) behind one cursor/query interface.
"""

import threading
from contextlib import contextmanager
from typing import Any, Dict, Tuple, Union

import pymysql
import snowflake.connector
import structlog
from snowflake.connector.errors import Error as SnowflakeError

from ..exceptions import ConnectivityError
from ..models.config import SourceConfig, WarehouseConfig
from ..utils.retry import retry_on_connection_error


ConnectionConfig = Union[SourceConfig, WarehouseConfig]


class DatabaseService:
    """Service for database operations"""

    def __init__(self):
        self._connections: Dict[str, Any] = {}
        self._connection_configs: Dict[str, ConnectionConfig] = {}
        self._connection_lock = threading.RLock()
        self.logger = structlog.get_logger()

    @retry_on_connection_error(max_attempts=3)
    def connect(self, config: ConnectionConfig, connection_name: str = "default") -> Any:
        """Connect to the source or the warehouse, depending on the config type"""
        with self._connection_lock:
            try:
                if isinstance(config, WarehouseConfig):
                    connection = snowflake.connector.connect(**config.to_connection_params())
                else:
                    connection_params = config.to_connection_params()
                    connection_params.update({
                        'connect_timeout': 10,
                        'read_timeout': 60,
                        'write_timeout': 60,
                    })
                    connection = pymysql.connect(**connection_params)
            except (pymysql.Error, SnowflakeError, OSError) as e:
                raise ConnectivityError(f"Failed to connect '{connection_name}': {e}")

            self._connections[connection_name] = connection
            self._connection_configs[connection_name] = config
            self.logger.info("Connected", connection_name=connection_name,
                             backend=type(config).__name__)
            return connection

    def get_connection(self, connection_name: str = "default") -> Any:
        """Get existing connection"""
        with self._connection_lock:
            connection = self._connections.get(connection_name)
            if connection is None:
                raise ConnectivityError(f"Connection '{connection_name}' not found")
            return connection

    @contextmanager
    def get_cursor(self, connection_name: str = "default"):
        """Get database cursor with automatic cleanup"""
        connection = self.get_connection(connection_name)
        cursor = connection.cursor()
        try:
            yield cursor
        finally:
            try:
                cursor.close()
            except Exception as e:
                self.logger.debug("Error closing cursor (expected during cleanup)",
                                  connection_name=connection_name, error=str(e))

    def execute_query(self, sql: str, values: Tuple = None, connection_name: str = "default") -> Any:
        """Execute query and return all rows"""
        self.logger.debug("Executing query", connection_name=connection_name, sql=sql)
        with self.get_cursor(connection_name) as cursor:
            cursor.execute(sql, values)
            return cursor.fetchall()

    def execute_update(self, sql: str, values: Tuple = None, connection_name: str = "default") -> int:
        """Execute a statement and return affected rows"""
        self.logger.debug("Executing statement", connection_name=connection_name, sql=sql)
        with self.get_cursor(connection_name) as cursor:
            cursor.execute(sql, values)
            return cursor.rowcount

    def is_connected(self, connection_name: str) -> bool:
        """Check if connection is active"""
        connection = self._connections.get(connection_name)
        if connection is None:
            return False
        if isinstance(self._connection_configs.get(connection_name), WarehouseConfig):
            return not connection.is_closed()
        try:
            connection.ping(reconnect=False)
            return True
        except (pymysql.Error, OSError) as e:
            self.logger.debug("Connection check failed", connection_name=connection_name, error=str(e))
            return False

    def test_connection(self, config: ConnectionConfig) -> bool:
        """Test a connection with a trivial query"""
        try:
            self.connect(config, "test")
            result = self.execute_query("SELECT 1", connection_name="test")
            return bool(result) and result[0][0] == 1
        except (ConnectivityError, pymysql.Error, SnowflakeError) as e:
            self.logger.error("Connection test failed", error=str(e))
            return False
        finally:
            self.close_connection("test")

    def close_connection(self, connection_name: str = "default") -> None:
        """Close database connection"""
        with self._connection_lock:
            connection = self._connections.pop(connection_name, None)
            self._connection_configs.pop(connection_name, None)
            if connection is None:
                self.logger.debug("Connection not found for closing", connection_name=connection_name)
                return
            try:
                connection.close()
            except Exception as e:
                self.logger.warning("Unexpected error closing connection",
                                    connection_name=connection_name, error=str(e))

    def close_all_connections(self) -> None:
        """Close all database connections"""
        for connection_name in list(self._connections.keys()):
            self.close_connection(connection_name)
