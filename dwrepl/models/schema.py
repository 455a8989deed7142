"""
Table schema models for TiDB to warehouse replication
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ConfigurationError


class TableAction(Enum):
    """Structural action carried by a schema change"""
    NONE = "none"
    TRUNCATE = "truncate"
    DROP_TABLE = "drop-table"
    CREATE_TABLE = "create-table"
    RENAME_TABLES = "rename-tables"
    DROP_SCHEMA = "drop-schema"
    CREATE_SCHEMA = "create-schema"

    @property
    def is_structural(self) -> bool:
        return self is not TableAction.NONE


# TiDB DDL job action codes written into TiCDC schema files. Codes not
# listed here are column-level changes.
TIDB_ACTION_CODES: Dict[int, TableAction] = {
    1: TableAction.CREATE_SCHEMA,
    2: TableAction.DROP_SCHEMA,
    3: TableAction.CREATE_TABLE,
    4: TableAction.DROP_TABLE,
    11: TableAction.TRUNCATE,
    14: TableAction.RENAME_TABLES,
    47: TableAction.RENAME_TABLES,
}


class ColumnAction(Enum):
    """Column-level diff classification"""
    ADD = "add"
    DROP = "drop"
    MODIFY = "modify"
    RENAME = "rename"
    UNCHANGED = "unchanged"


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Expected an integer, got: {value!r}")


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


@dataclass(frozen=True)
class ColumnDescriptor:
    """A single column of a source table"""
    name: str
    type: str
    precision: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True
    default: Optional[Any] = None
    is_primary_key: bool = False
    column_id: Optional[int] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Column name is required")
        if not self.type:
            raise ValueError(f"Column type is required for column '{self.name}'")

    @property
    def base_type(self) -> str:
        """Lower-cased source type without the UNSIGNED qualifier"""
        tp = self.type.strip().lower()
        if tp.endswith(" unsigned"):
            tp = tp[:-len(" unsigned")]
        return tp

    def type_changed(self, other: 'ColumnDescriptor') -> bool:
        return (self.base_type != other.base_type
                or self.precision != other.precision
                or self.scale != other.scale)

    def attributes_changed(self, other: 'ColumnDescriptor') -> bool:
        return (self.type_changed(other)
                or self.default != other.default
                or self.nullable != other.nullable)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnDescriptor':
        """Create descriptor from a TiCDC schema file column entry"""
        try:
            precision = data.get('ColumnPrecision')
            if precision in (None, ""):
                precision = data.get('ColumnLength')
            nullable = data.get('ColumnNullable')
            nullable = True if nullable in (None, "") else _flag(nullable)
            return cls(
                name=data['ColumnName'],
                type=data['ColumnType'],
                precision=_optional_int(precision),
                scale=_optional_int(data.get('ColumnScale')),
                nullable=nullable,
                default=data.get('ColumnDefault'),
                is_primary_key=_flag(data.get('ColumnIsPk', False)),
                column_id=_optional_int(data.get('ColumnId')),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing column attribute in schema file: {e}")


@dataclass(frozen=True)
class TableDefinition:
    """Table definition produced by the upstream schema-change feed"""
    schema: str
    table: str
    columns: Tuple[ColumnDescriptor, ...] = ()
    action: TableAction = TableAction.NONE
    version: Optional[int] = None
    query: Optional[str] = None

    def __post_init__(self):
        if not self.schema:
            raise ValueError("Schema is required")
        # Schema-level definitions carry no table name
        if not self.table and self.action not in (TableAction.DROP_SCHEMA, TableAction.CREATE_SCHEMA):
            raise ValueError("Table is required")
        if not isinstance(self.columns, tuple):
            object.__setattr__(self, 'columns', tuple(self.columns))

    @property
    def primary_key_columns(self) -> List[ColumnDescriptor]:
        return [col for col in self.columns if col.is_primary_key]

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableDefinition':
        """Create definition from a parsed TiCDC schema file"""
        try:
            action_code = int(data.get('Type') or 0)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid DDL action type: {data.get('Type')!r}")
        try:
            columns = tuple(ColumnDescriptor.from_dict(col) for col in data.get('TableColumns') or [])
            return cls(
                schema=data['Schema'],
                table=data.get('Table') or "",
                columns=columns,
                action=TIDB_ACTION_CODES.get(action_code, TableAction.NONE),
                version=_optional_int(data.get('TableVersion')),
                query=data.get('Query'),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing key in schema file: {e}")


@dataclass(frozen=True)
class ColumnDiffEntry:
    """Diff of one column between two table definitions"""
    action: ColumnAction
    before: Optional[ColumnDescriptor] = None
    after: Optional[ColumnDescriptor] = None

    def __post_init__(self):
        if self.action is ColumnAction.ADD and (self.after is None or self.before is not None):
            raise ValueError("ADD entry requires only an after column")
        if self.action is ColumnAction.DROP and (self.before is None or self.after is not None):
            raise ValueError("DROP entry requires only a before column")
        if self.action in (ColumnAction.MODIFY, ColumnAction.RENAME, ColumnAction.UNCHANGED) \
                and (self.before is None or self.after is None):
            raise ValueError(f"{self.action.name} entry requires before and after columns")


@dataclass
class TableSchemaHistory:
    """Current schema of one table while consuming change files"""
    schema: str
    table: str
    current: Optional[TableDefinition] = None

    @property
    def current_columns(self) -> List[ColumnDescriptor]:
        return list(self.current.columns) if self.current else []

    def advance(self, definition: TableDefinition) -> None:
        self.current = definition
