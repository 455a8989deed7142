"""
TiDB source introspection
"""

from typing import List, Optional

import structlog

from ..exceptions import ConnectivityError, ReplicationException
from ..models.schema import ColumnDescriptor
from .database_service import DatabaseService


COLUMNS_QUERY = """SELECT COLUMN_NAME, DATA_TYPE, COLUMN_TYPE, CHARACTER_MAXIMUM_LENGTH,
       NUMERIC_PRECISION, NUMERIC_SCALE, DATETIME_PRECISION, IS_NULLABLE, COLUMN_DEFAULT
FROM information_schema.columns
WHERE table_schema = %s AND table_name = %s
ORDER BY ORDINAL_POSITION"""

PRIMARY_KEY_QUERY = """SELECT COLUMN_NAME
FROM information_schema.key_column_usage
WHERE table_schema = %s AND table_name = %s AND CONSTRAINT_NAME = 'PRIMARY'
ORDER BY ORDINAL_POSITION"""

_LENGTH_TYPES = ("varchar", "char", "binary", "varbinary")
_TIME_TYPES = ("datetime", "timestamp", "time")


class SourceService:
    """Reads table metadata and the consistency point from TiDB"""

    def __init__(self, database_service: DatabaseService, connection_name: str = "source"):
        self.database_service = database_service
        self.connection_name = connection_name
        self.logger = structlog.get_logger()

    def get_current_tso(self) -> int:
        """Return the current TiDB timestamp oracle value"""
        rows = self.database_service.execute_query("SHOW MASTER STATUS", connection_name=self.connection_name)
        if not rows:
            raise ConnectivityError("Could not get master status from the source")
        # TiDB reports the current TSO in the Position column
        tso = int(rows[0][1])
        self.logger.info("Resolved consistency point", tso=tso)
        return tso

    def get_table_columns(self, database: str, table: str) -> List[ColumnDescriptor]:
        """Describe the columns of a source table, primary key flags included"""
        rows = self.database_service.execute_query(COLUMNS_QUERY, (database, table),
                                                   connection_name=self.connection_name)
        if not rows:
            raise ReplicationException(f"Source table {database}.{table} not found or has no columns")

        pk_rows = self.database_service.execute_query(PRIMARY_KEY_QUERY, (database, table),
                                                      connection_name=self.connection_name)
        pk_names = {row[0] for row in pk_rows}

        columns = []
        for (name, data_type, column_type, char_length, num_precision,
             num_scale, time_precision, is_nullable, default) in rows:
            data_type = data_type.lower()
            if "unsigned" in (column_type or "").lower():
                data_type = f"{data_type} unsigned"
            columns.append(ColumnDescriptor(
                name=name,
                type=data_type,
                precision=self._precision(data_type, char_length, num_precision, time_precision),
                scale=_to_int(num_scale) if data_type in ("decimal", "numeric") else None,
                nullable=(is_nullable == "YES"),
                default=default,
                is_primary_key=name in pk_names,
            ))

        self.logger.debug("Described source table", database=database, table=table,
                          columns=len(columns), primary_key=sorted(pk_names))
        return columns

    @staticmethod
    def _precision(data_type: str, char_length, num_precision, time_precision) -> Optional[int]:
        if data_type in _LENGTH_TYPES:
            return _to_int(char_length)
        if data_type in ("decimal", "numeric"):
            return _to_int(num_precision)
        if data_type in _TIME_TYPES:
            return _to_int(time_precision)
        return None


def _to_int(value) -> Optional[int]:
    return None if value is None else int(value)
