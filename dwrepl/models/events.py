"""
Change event models for TiDB to warehouse replication
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .schema import TableDefinition


class ChangeFlag(Enum):
    """Row change flag as written by the change-capture service"""
    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"

    @property
    def is_delete(self) -> bool:
        return self is ChangeFlag.DELETE


@dataclass(frozen=True)
class ChangeRow:
    """A single row-level change inside a staged change file"""
    flag: ChangeFlag
    commit_ts: int
    key: Tuple[Any, ...]
    values: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self):
        if not self.key:
            raise ValueError("Primary key values are required")

    @classmethod
    def from_csv_record(cls, record: Sequence[str], table_def: TableDefinition) -> 'ChangeRow':
        """Parse a CSV record laid out as [op, table, schema, commit_ts, *columns]"""
        if len(record) < 4 + len(table_def.columns):
            raise ValueError(f"Change record has {len(record)} fields, expected "
                             f"{4 + len(table_def.columns)} for {table_def.schema}.{table_def.table}")
        values = dict(zip(table_def.column_names, record[4:4 + len(table_def.columns)]))
        key = tuple(values[col.name] for col in table_def.primary_key_columns)
        return cls(
            flag=ChangeFlag(record[0]),
            commit_ts=int(record[3]),
            key=key,
            values=values,
        )


# <schema>/<table>/<table-version>/[<date>/]CDC<index>.csv
_DATA_FILE_PATTERN = r"^{schema}/{table}/(\d+)/(?:(\d{{4}}(?:-\d{{2}}){{0,2}})/)?CDC(\d+)\.csv$"
# <schema>/<table>/meta/schema_<table-version>_<checksum>.json
_TABLE_SCHEMA_PATTERN = r"^{schema}/{table}/meta/schema_(\d+)_(\d+)\.json$"
# <schema>/meta/schema_<table-version>_<checksum>.json
_DATABASE_SCHEMA_PATTERN = r"^{schema}/meta/schema_(\d+)_(\d+)\.json$"


@dataclass(frozen=True, order=True)
class ChangeFile:
    """A staged change file in the change-capture storage layout"""
    table_version: int
    date: str
    index: int
    path: str = field(compare=False)

    @classmethod
    def parse(cls, path: str, schema: str, table: str) -> Optional['ChangeFile']:
        """Parse a storage key relative to the sink root; None if it is not a data file"""
        pattern = _DATA_FILE_PATTERN.format(schema=re.escape(schema), table=re.escape(table))
        match = re.match(pattern, path)
        if not match:
            return None
        return cls(
            table_version=int(match.group(1)),
            date=match.group(2) or "",
            index=int(match.group(3)),
            path=path,
        )


@dataclass(frozen=True, order=True)
class SchemaFile:
    """A schema file written by the change-capture service on each DDL"""
    table_version: int
    path: str = field(compare=False)
    database_level: bool = field(default=False, compare=False)

    @classmethod
    def parse(cls, path: str, schema: str, table: str) -> Optional['SchemaFile']:
        escaped_schema = re.escape(schema)
        match = re.match(_TABLE_SCHEMA_PATTERN.format(schema=escaped_schema, table=re.escape(table)), path)
        if match:
            return cls(table_version=int(match.group(1)), path=path)
        match = re.match(_DATABASE_SCHEMA_PATTERN.format(schema=escaped_schema), path)
        if match:
            return cls(table_version=int(match.group(1)), path=path, database_level=True)
        return None


def sort_change_files(paths: List[str], schema: str, table: str) -> Tuple[List[SchemaFile], List[ChangeFile]]:
    """Split storage keys into ordered schema files and data files"""
    schema_files = []
    data_files = []
    for path in paths:
        data_file = ChangeFile.parse(path, schema, table)
        if data_file:
            data_files.append(data_file)
            continue
        schema_file = SchemaFile.parse(path, schema, table)
        if schema_file:
            schema_files.append(schema_file)
    return sorted(schema_files), sorted(data_files)
