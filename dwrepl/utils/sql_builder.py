"""
SQL builder utilities for warehouse statements
"""

import re
from typing import Any, Optional


CSV_FILE_FORMAT = "(TYPE = 'CSV' EMPTY_FIELD_AS_NULL = FALSE NULL_IF=('\\\\N') FIELD_OPTIONALLY_ENCLOSED_BY='\"')"
REQUEST_ID_TAG = "dwrepl-reqid"

_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


class SQLBuilder:
    """Utility class for building warehouse SQL statements"""

    @staticmethod
    def escape_string(value: Any) -> str:
        """Escape a value for use inside a single-quoted string literal"""
        return str(value).replace("\\", "\\\\").replace("'", "''")

    @staticmethod
    def quote_literal(value: Any) -> str:
        return f"'{SQLBuilder.escape_string(value)}'"

    @staticmethod
    def format_default_value(value: Any) -> str:
        """Render a column default: numbers unquoted, anything else as a string literal"""
        if isinstance(value, bool):
            return SQLBuilder.quote_literal(value)
        if isinstance(value, (int, float)) or _NUMERIC_RE.match(str(value).strip()):
            return str(value).strip()
        return SQLBuilder.quote_literal(value)

    @staticmethod
    def build_create_stage(stage_name: str, url: str, access_key_id: str,
                           secret_access_key: str, session_token: Optional[str] = None) -> str:
        """
        Build CREATE STAGE statement bound to an S3 location

        Args:
            stage_name: Stage name
            url: s3:// location the stage points at
            access_key_id: AWS access key
            secret_access_key: AWS secret key
            session_token: Optional AWS session token

        Returns:
            SQL statement
        """
        esc = SQLBuilder.escape_string
        return f"""CREATE OR REPLACE STAGE {stage_name}
URL = '{esc(url)}'
CREDENTIALS = (AWS_KEY_ID = '{esc(access_key_id)}' AWS_SECRET_KEY = '{esc(secret_access_key)}' AWS_TOKEN = '{esc(session_token or "")}')
FILE_FORMAT = {CSV_FILE_FORMAT};"""

    @staticmethod
    def build_drop_stage(stage_name: str) -> str:
        return f"DROP STAGE IF EXISTS {stage_name};"

    @staticmethod
    def build_copy_into(target_table: str, stage_name: str, file_path: str, request_id: str) -> str:
        """
        Build COPY INTO statement loading one staged file

        The request id is embedded as a comment so the statement can be found
        in the query history while it runs.
        """
        esc = SQLBuilder.escape_string
        return f"""COPY INTO {target_table}
-- {REQUEST_ID_TAG}={request_id}
FROM @{stage_name}
FILES = ('{esc(file_path)}')
FILE_FORMAT = {CSV_FILE_FORMAT}
ON_ERROR = CONTINUE;"""

    @staticmethod
    def build_request_tag(request_id: str) -> str:
        return f"{REQUEST_ID_TAG}={request_id}"

    @staticmethod
    def build_server_timestamp_query() -> str:
        return "SELECT CURRENT_TIMESTAMP"

    @staticmethod
    def build_query_history_query() -> str:
        """
        Build query-history lookup for COPY progress

        Parameters: horizon timestamp, request tag.
        """
        return """SELECT ROWS_PRODUCED
FROM TABLE(INFORMATION_SCHEMA.QUERY_HISTORY_BY_USER(
    END_TIME_RANGE_START => %s::TIMESTAMP_LTZ,
    RESULT_LIMIT => 10000
))
WHERE QUERY_TYPE = 'COPY'
AND CONTAINS(QUERY_TEXT, %s)"""

    @staticmethod
    def build_set_timezone(timezone: str) -> str:
        return f"ALTER SESSION SET TIMEZONE = {SQLBuilder.quote_literal(timezone)}"
