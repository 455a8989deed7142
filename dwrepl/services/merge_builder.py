"""
Change application engine

Builds the MERGE statement that applies one staged batch of change rows
to the target table, plus an in-memory rendition of the same decision
table used to check convergence.
"""

from typing import Any, Dict, Iterable, List, Tuple

import structlog

from ..exceptions import MergeError
from ..models.events import ChangeRow
from ..models.schema import TableDefinition
from ..utils.sql_builder import SQLBuilder


FLAG_COLUMN = '"METADATA$FLAG"'
# Staged CSV layout: $1 flag, $2 table, $3 schema, $4 commit ts, $5.. columns
COMMIT_TS_POSITION = 4
FIRST_COLUMN_POSITION = 5

Key = Tuple[Any, ...]


class MergeBuilder:
    """Builds idempotent MERGE statements for staged change files"""

    def __init__(self):
        self.logger = structlog.get_logger()

    def build(self, table_def: TableDefinition, stage_name: str, file_path: str) -> str:
        """
        Build the MERGE statement for one staged change file

        Args:
            table_def: Table definition with primary key flags resolved
            stage_name: Stage the change file is reachable through
            file_path: Path of the change file relative to the stage

        Returns:
            A single MERGE statement

        Raises:
            MergeError: if the table has no primary key
        """
        pk_columns = [col.name for col in table_def.primary_key_columns]
        if not pk_columns:
            raise MergeError(
                f"Table {table_def.schema}.{table_def.table} has no primary key; "
                "change rows cannot be deduplicated deterministically")

        columns = table_def.column_names
        non_key_columns = [name for name in columns if name not in pk_columns]

        select_list = [f"$1 AS {FLAG_COLUMN}"]
        select_list.extend(f"${pos} AS {name}"
                           for pos, name in enumerate(columns, start=FIRST_COLUMN_POSITION))

        on_clause = " AND ".join(f"T.{name} = S.{name}" for name in pk_columns)

        clauses = []
        if non_key_columns:
            update_set = ", ".join(f"{name} = S.{name}" for name in non_key_columns)
            clauses.append(f"WHEN MATCHED AND S.{FLAG_COLUMN} != 'D' THEN UPDATE SET {update_set}")
        clauses.append(f"WHEN MATCHED AND S.{FLAG_COLUMN} = 'D' THEN DELETE")
        clauses.append(
            f"WHEN NOT MATCHED AND S.{FLAG_COLUMN} != 'D' THEN INSERT ({', '.join(columns)}) "
            f"VALUES ({', '.join(f'S.{name}' for name in columns)})")

        source = SQLBuilder.quote_literal(f"@{stage_name}/{file_path}")
        select_body = ",\n        ".join(select_list)
        when_clauses = "\n".join(clauses)
        statement = f"""MERGE INTO {table_def.table} AS T USING
(
    SELECT
        {select_body}
    FROM {source}
    QUALIFY row_number() over (partition by {', '.join(pk_columns)} order by ${COMMIT_TS_POSITION} desc) = 1
) AS S
ON ({on_clause})
{when_clauses};"""

        self.logger.debug("Built merge statement", table=table_def.table, file=file_path, sql=statement)
        return statement


def deduplicate(rows: Iterable[ChangeRow]) -> Dict[Key, ChangeRow]:
    """Keep the row with the greatest commit ts per key; later rows win ties"""
    latest: Dict[Key, ChangeRow] = {}
    for row in rows:
        current = latest.get(row.key)
        if current is None or row.commit_ts >= current.commit_ts:
            latest[row.key] = row
    return latest


def apply_rows(state: Dict[Key, Dict[str, Any]], rows: Iterable[ChangeRow],
               key_columns: List[str] = None) -> Dict[Key, Dict[str, Any]]:
    """
    Apply a batch of change rows to an in-memory table

    Mirrors the MERGE decision table: matched rows are updated on their
    non-key columns or deleted, unmatched rows are inserted unless the
    flag is a delete. The input state is not modified.
    """
    result = {key: dict(values) for key, values in state.items()}
    key_columns = set(key_columns or [])
    for key, row in deduplicate(rows).items():
        matched = key in result
        if row.flag.is_delete:
            if matched:
                del result[key]
        elif matched:
            result[key].update({name: value for name, value in row.values.items()
                                if name not in key_columns})
        else:
            result[key] = dict(row.values)
    return result
