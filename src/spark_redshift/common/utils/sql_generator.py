"""
SQL statements issued against Redshift by reads and writes.

Identifiers come either from a parsed TableName or are double-quoted here, and
every literal that reaches a statement is escaped, so none of these builders
splice unvalidated user text into SQL. Pre- and post-actions are the one
exception: they are user-supplied SQL by definition.
"""

import re
from collections import Counter
from typing import List, Optional, Sequence, Union

from pyspark.sql.types import StructType

from ..exceptions import ConfigurationError
from ..models.filters import Filter
from ..models.parameters import TableName
from .filter_pushdown import build_where_clause
from .type_mapping import quote_identifier, schema_string

NULL_MARKER = "@NULL@"

LOAD_ERRORS_QUERY = "SELECT * FROM stl_load_errors WHERE query = pg_last_query_id()"

BEGIN_SQL = "BEGIN"
COMMIT_SQL = "COMMIT"
ROLLBACK_SQL = "ROLLBACK"

# Keeps each unloaded part small enough to be read as one string per file
DEFAULT_UNLOAD_MAX_FILE_SIZE_MB = 100

_CREDENTIALS_RE = re.compile(r"(CREDENTIALS\s+)'[^']*'", re.IGNORECASE)

TableRef = Union[TableName, str]


def escape_string_literal(value: str) -> str:
    """Escape text for use inside a single-quoted Redshift string literal."""
    return value.replace("\\", "\\\\").replace("'", "''")


def escape_unload_query(query: str) -> str:
    """
    Escape a query for embedding in UNLOAD ('...').

    UNLOAD takes its query as a quoted string in which quotes are
    backslash-escaped, so doubled quotes already present in the query's own
    literals survive as \\'\\'.
    """
    return query.replace("\\", "\\\\").replace("'", "\\'")


def select_list(columns: Sequence[str]) -> str:
    return ", ".join(quote_identifier(column) for column in columns)


def _where(filters: Sequence[Filter], schema: Optional[StructType]) -> str:
    clause = build_where_clause(filters, schema)
    return f" {clause}" if clause else ""


def unload_query(source: str, columns: Sequence[str], filters: Sequence[Filter],
                 schema: Optional[StructType], credentials: str, destination: str,
                 max_file_size_mb: int = DEFAULT_UNLOAD_MAX_FILE_SIZE_MB) -> str:
    """
    Build the UNLOAD statement for a scan.

    Args:
        source: Table name or parenthesized query to select from
        columns: Projected column names, in order
        filters: Filters to push down; unsupported ones are left out
        schema: Schema used to render filter literals
        credentials: CREDENTIALS clause value
        destination: s3:// prefix that receives the unloaded files
        max_file_size_mb: Upper bound on the size of each unloaded part file
    """
    query = f"SELECT {select_list(columns)} FROM {source}{_where(filters, schema)}"
    return (
        f"UNLOAD ('{escape_unload_query(query)}') TO '{escape_string_literal(destination)}' "
        f"WITH CREDENTIALS '{escape_string_literal(credentials)}' "
        f"ESCAPE MANIFEST NULL AS '{NULL_MARKER}' MAXFILESIZE {int(max_file_size_mb)} MB"
    )


def count_query(source: str, filters: Sequence[Filter], schema: Optional[StructType]) -> str:
    """Row count of a scan that projects no columns."""
    return f"SELECT count(*) FROM {source}{_where(filters, schema)}"


def create_table_sql(schema: StructType, table: TableRef, diststyle: Optional[str] = None,
                     distkey: Optional[str] = None, sortkeyspec: Optional[str] = None) -> str:
    """
    Build CREATE TABLE IF NOT EXISTS with optional distribution and sort keys.

    Raises:
        SchemaMappingError: If a column type cannot be stored in Redshift
    """
    sql = f"CREATE TABLE IF NOT EXISTS {table} ({schema_string(schema)})"
    if diststyle:
        sql += f" DISTSTYLE {diststyle}"
    if distkey:
        sql += f" DISTKEY ({distkey})"
    if sortkeyspec:
        sql += f" {sortkeyspec}"
    return sql


def copy_sql(table: TableRef, manifest_uri: str, credentials: str, extra_options: str = "") -> str:
    """COPY from an Avro manifest. Avro carries nulls natively, so no NULL AS marker is needed."""
    sql = (
        f"COPY {table} FROM '{escape_string_literal(manifest_uri)}' "
        f"CREDENTIALS '{escape_string_literal(credentials)}' "
        "FORMAT AS AVRO 'auto' TIMEFORMAT 'epochmillisecs' MANIFEST"
    )
    if extra_options:
        sql += f" {extra_options}"
    return sql


def transaction_sql(target: TableName, staging: TableName, backup: TableName) -> str:
    """
    Rename-based swap of the staging table into place, as one statement block.

    ALTER TABLE ... RENAME TO only accepts an unqualified new name; the
    staging and backup tables live in the target's schema.
    """
    return (
        "BEGIN; "
        f"ALTER TABLE {target} RENAME TO {backup.unqualified}; "
        f"ALTER TABLE {staging} RENAME TO {target.unqualified}; "
        f"DROP TABLE {backup}; "
        "END;"
    )


def rename_sql(table: TableName, new_name: TableName) -> str:
    return f"ALTER TABLE {table} RENAME TO {new_name.unqualified}"


def drop_table_sql(table: TableRef) -> str:
    return f"DROP TABLE IF EXISTS {table}"


def append_transaction_sql(target: TableName, staging: TableName) -> str:
    return f"BEGIN; INSERT INTO {target} SELECT * FROM {staging}; END;"


def load_errors_query() -> str:
    return LOAD_ERRORS_QUERY


def render_action(action: str, table: TableRef) -> str:
    """Substitute the table name for %s in a pre- or post-action."""
    return action.replace("%s", str(table))


def check_ambiguous_columns(schema: StructType) -> None:
    """
    Reject schemas whose column names collide once lower-cased.

    Redshift folds unquoted names to lowercase and the staged Avro fields are
    lower-cased, so such columns cannot be told apart by COPY.
    """
    counts = Counter(field.name.lower() for field in schema.fields)
    duplicates: List[str] = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        raise ConfigurationError(
            "Some column names are ambiguous under Redshift's case-insensitive identifiers; "
            f"rename these columns before saving: {duplicates}"
        )


def redact_credentials(sql: str) -> str:
    """Hide the CREDENTIALS value of UNLOAD and COPY statements for logging."""
    return _CREDENTIALS_RE.sub(r"\1'***'", sql)
