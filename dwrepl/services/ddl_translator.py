"""
Schema diff and DDL translation for warehouse targets

Turns a schema change captured from TiDB into the ordered list of DDL
statements that bring the warehouse table to the new definition.
"""

import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import structlog

from ..exceptions import DegradedTranslationWarning, UnsupportedDDLError
from ..models.schema import (
    ColumnAction,
    ColumnDescriptor,
    ColumnDiffEntry,
    TableAction,
    TableDefinition,
)
from ..utils.sql_builder import SQLBuilder


TypeRenderer = Callable[[ColumnDescriptor], str]


def _plain(target: str) -> TypeRenderer:
    return lambda col: target


def _upper() -> TypeRenderer:
    return lambda col: col.base_type.upper()


def _with_length(target: Optional[str] = None) -> TypeRenderer:
    def render(col: ColumnDescriptor) -> str:
        name = target or col.base_type.upper()
        return f"{name}({col.precision})" if col.precision is not None else name
    return render


def _with_precision_scale() -> TypeRenderer:
    def render(col: ColumnDescriptor) -> str:
        name = col.base_type.upper()
        if col.precision is None:
            return name
        return f"{name}({col.precision}, {col.scale or 0})"
    return render


# Refer to:
# https://dev.mysql.com/doc/refman/8.0/en/data-types.html
# https://docs.snowflake.com/en/sql-reference/intro-summary-data-types
SNOWFLAKE_TYPES: Dict[str, TypeRenderer] = {
    **{tp: _plain("TEXT") for tp in ("text", "longtext", "mediumtext", "tinytext",
                                      "blob", "longblob", "mediumblob", "tinyblob")},
    **{tp: _with_length() for tp in ("varchar", "char", "binary", "varbinary")},
    "int": _plain("INT"),
    "mediumint": _plain("INT"),
    **{tp: _upper() for tp in ("bigint", "tinyint", "smallint", "float", "double")},
    "decimal": _with_precision_scale(),
    "numeric": _with_precision_scale(),
    "bool": _plain("BOOLEAN"),
    "boolean": _plain("BOOLEAN"),
    "date": _plain("DATE"),
    **{tp: _with_length() for tp in ("datetime", "timestamp", "time")},
}

# https://docs.aws.amazon.com/redshift/latest/dg/c_Supported_data_types.html
REDSHIFT_TYPES: Dict[str, TypeRenderer] = {
    **SNOWFLAKE_TYPES,
    **{tp: _plain("VARCHAR(65535)") for tp in ("text", "longtext", "mediumtext", "tinytext",
                                                "blob", "longblob", "mediumblob", "tinyblob")},
    "binary": _with_length("VARBYTE"),
    "varbinary": _with_length("VARBYTE"),
    "tinyint": _plain("SMALLINT"),
    "float": _plain("REAL"),
    "double": _plain("DOUBLE PRECISION"),
    "datetime": _plain("TIMESTAMP"),
    "timestamp": _plain("TIMESTAMP"),
    "time": _plain("TIME"),
}


@dataclass(frozen=True)
class WarehouseDialect:
    """DDL capabilities of a warehouse engine"""
    name: str
    supports_type_change: bool
    create_table: str
    types: Dict[str, TypeRenderer] = field(repr=False, hash=False, compare=False)


SNOWFLAKE = WarehouseDialect(
    name="snowflake",
    supports_type_change=True,
    create_table="CREATE OR REPLACE TABLE",
    types=SNOWFLAKE_TYPES,
)

REDSHIFT = WarehouseDialect(
    name="redshift",
    supports_type_change=False,
    create_table="CREATE TABLE",
    types=REDSHIFT_TYPES,
)

DIALECTS: Dict[str, WarehouseDialect] = {d.name: d for d in (SNOWFLAKE, REDSHIFT)}


def compute_column_diff(prev_columns: Sequence[ColumnDescriptor],
                        cur_columns: Sequence[ColumnDescriptor]) -> List[ColumnDiffEntry]:
    """
    Classify every column of the previous and current definitions

    Columns are matched by column id when every column carries one (which is
    what makes renames detectable), otherwise by name. Previous columns come
    first in their original order, followed by added columns.
    """
    all_columns = list(prev_columns) + list(cur_columns)
    use_ids = bool(all_columns) and all(col.column_id is not None for col in all_columns)

    def identity(col: ColumnDescriptor):
        return col.column_id if use_ids else col.name

    prev_by_identity = {identity(col): col for col in prev_columns}
    cur_by_identity = {identity(col): col for col in cur_columns}
    if len(prev_by_identity) != len(prev_columns) or len(cur_by_identity) != len(cur_columns):
        raise ValueError("Column identities must be unique within a table definition")

    entries = []
    for before in prev_columns:
        after = cur_by_identity.get(identity(before))
        if after is None:
            entries.append(ColumnDiffEntry(ColumnAction.DROP, before=before))
        elif after.name != before.name:
            entries.append(ColumnDiffEntry(ColumnAction.RENAME, before=before, after=after))
        elif before.attributes_changed(after):
            entries.append(ColumnDiffEntry(ColumnAction.MODIFY, before=before, after=after))
        else:
            entries.append(ColumnDiffEntry(ColumnAction.UNCHANGED, before=before, after=after))

    for after in cur_columns:
        if identity(after) not in prev_by_identity:
            entries.append(ColumnDiffEntry(ColumnAction.ADD, after=after))

    return entries


class DDLTranslator:
    """Translates TiDB schema changes into warehouse DDL"""

    def __init__(self, dialect: WarehouseDialect = SNOWFLAKE):
        self.dialect = dialect
        self.logger = structlog.get_logger()

    @classmethod
    def for_dialect(cls, name: str) -> 'DDLTranslator':
        try:
            return cls(DIALECTS[name.lower()])
        except KeyError:
            raise UnsupportedDDLError("dialect", f"unknown warehouse dialect '{name}'")

    def render_type(self, column: ColumnDescriptor) -> Optional[str]:
        """Render the target type, or None when the source type is unknown"""
        renderer = self.dialect.types.get(column.base_type)
        if renderer is None:
            return None
        return renderer(column)

    def render_column(self, column: ColumnDescriptor) -> Optional[str]:
        """Render a column spec like "id INT NOT NULL DEFAULT 0" """
        type_str = self.render_type(column)
        if type_str is None:
            self._degraded("Unsupported source data type, column omitted",
                           column=column.name, data_type=column.type)
            return None
        parts = [column.name, type_str]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {SQLBuilder.format_default_value(column.default)}")
        elif column.nullable:
            parts.append("DEFAULT NULL")
        return " ".join(parts)

    def render_create_table(self, table: str, columns: Sequence[ColumnDescriptor]) -> str:
        """Render the statement creating the target table for a snapshot load"""
        rows = [spec for spec in (self.render_column(col) for col in columns) if spec]
        if not rows:
            raise UnsupportedDDLError("create-table", f"no column of table '{table}' can be rendered")
        pk_columns = [col.name for col in columns if col.is_primary_key]
        if pk_columns:
            rows.append(f"PRIMARY KEY ({', '.join(pk_columns)})")
        body = ",\n".join(f"    {row}" for row in rows)
        return f"{self.dialect.create_table} {table} (\n{body}\n)"

    def translate(self, prev_columns: Sequence[ColumnDescriptor], table_def: TableDefinition) -> List[str]:
        """
        Translate a schema change into DDL statements

        Args:
            prev_columns: Columns of the table before the change
            table_def: New table definition with its structural action

        Returns:
            Ordered list of DDL statements; empty when nothing changed

        Raises:
            UnsupportedDDLError: for changes that cannot be applied safely
        """
        action = table_def.action
        if action is TableAction.TRUNCATE:
            return [f"TRUNCATE TABLE {table_def.table};"]
        if action is TableAction.DROP_TABLE:
            return [f"DROP TABLE {table_def.table};"]
        if action is TableAction.DROP_SCHEMA:
            # Snowflake defaults to CASCADE, Redshift to RESTRICT
            return [f"DROP SCHEMA {table_def.schema} CASCADE;"]
        if action is TableAction.CREATE_TABLE:
            raise UnsupportedDDLError(action.value, f"received create table for '{table_def.table}', "
                                      "which is already replicated; drop and recreate it manually")
        if action is TableAction.RENAME_TABLES:
            raise UnsupportedDDLError(action.value, "renamed tables can no longer be captured; "
                                      "start a new task to capture the new table")
        if action is TableAction.CREATE_SCHEMA:
            raise UnsupportedDDLError(action.value, f"received create schema for '{table_def.schema}', "
                                      "which is already replicated")

        table = table_def.table
        ddls = []
        for entry in compute_column_diff(prev_columns, table_def.columns):
            if entry.action is ColumnAction.ADD:
                column_spec = self.render_column(entry.after)
                if column_spec:
                    ddls.append(f"ALTER TABLE {table} ADD COLUMN {column_spec};")
            elif entry.action is ColumnAction.DROP:
                ddls.append(f"ALTER TABLE {table} DROP COLUMN {entry.before.name};")
            elif entry.action is ColumnAction.RENAME:
                ddls.append(f"ALTER TABLE {table} RENAME COLUMN {entry.before.name} TO {entry.after.name};")
            elif entry.action is ColumnAction.MODIFY:
                ddls.extend(self._modify_statements(table, entry.before, entry.after))

        # TODO: translate primary key changes once TiCDC schema files carry index definitions
        return ddls

    def _modify_statements(self, table: str, before: ColumnDescriptor, after: ColumnDescriptor) -> List[str]:
        prefix = f"ALTER TABLE {table} ALTER COLUMN {after.name}"
        statements = []

        if before.type_changed(after):
            if not self.dialect.supports_type_change:
                raise UnsupportedDDLError(
                    "modify-column",
                    f"{self.dialect.name} cannot change the type of column '{after.name}' "
                    f"from {before.type} to {after.type} in place; the table must be recreated")
            type_str = self.render_type(after)
            if type_str is None:
                self._degraded("Unsupported source data type, type change omitted",
                               column=after.name, data_type=after.type)
            else:
                statements.append(f"{prefix} SET DATA TYPE {type_str};")

        if before.default != after.default:
            if after.default is None:
                statements.append(f"{prefix} DROP DEFAULT;")
            else:
                self._degraded(f"{self.dialect.name} does not support updating a column default value",
                               column=after.name, before=before.default, after=after.default)

        if before.nullable != after.nullable:
            if after.nullable:
                statements.append(f"{prefix} DROP NOT NULL;")
            else:
                statements.append(f"{prefix} SET NOT NULL;")

        return statements

    def _degraded(self, message: str, **context) -> None:
        self.logger.warning(message, dialect=self.dialect.name, **context)
        details = ", ".join(f"{key}={value!r}" for key, value in context.items())
        warnings.warn(f"{message} ({details})", DegradedTranslationWarning, stacklevel=3)
