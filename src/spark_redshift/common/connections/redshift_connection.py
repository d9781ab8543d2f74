# src/spark_redshift/common/connections/redshift_connection.py

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg2
import structlog
from pyspark.sql.types import StructType

from ..exceptions import ConfigurationError, WarehouseStatementError
from ..models.parameters import TableName
from ..utils.sql_generator import redact_credentials
from ..utils.type_mapping import from_redshift_column

logger = structlog.get_logger(__name__)

DriverFactory = Callable[..., Any]

_URL_SCHEMES = {
    "redshift": "postgresql",
    "postgresql": "postgresql",
    "postgres": "postgresql",
}

TABLE_EXISTS_SQL = (
    "SELECT 1 FROM information_schema.tables "
    "WHERE table_schema = COALESCE(%s, current_schema()) AND table_name = %s"
)


def normalize_url(url: str) -> str:
    """
    Turn a jdbc:redshift://, redshift:// or postgresql:// URL into a libpq URI.

    Raises:
        ConfigurationError: If the URL uses another scheme
    """
    stripped = url.strip()
    if stripped.lower().startswith("jdbc:"):
        stripped = stripped[len("jdbc:"):]
    scheme, sep, rest = stripped.partition("://")
    if not sep or scheme.lower() not in _URL_SCHEMES:
        raise ConfigurationError(
            "Redshift URL must start with jdbc:redshift://, redshift:// or postgresql://"
        )
    return f"{_URL_SCHEMES[scheme.lower()]}://{rest}"


class RedshiftConnection:
    """
    One open warehouse connection.

    Runs in autocommit mode, so every statement, including a multi-statement
    BEGIN ... END block, commits or fails as a unit on the server.
    """

    def __init__(self, raw_connection):
        self._raw = raw_connection
        self._closed = False
        self.logger = logger.bind(component="RedshiftConnection")

    @property
    def closed(self) -> bool:
        return self._closed

    def execute(self, sql: str) -> None:
        """
        Execute a statement that returns no rows.

        Raises:
            WarehouseStatementError: If the warehouse rejects the statement
        """
        self._run(sql)

    def query(self, sql: str, parameters: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute a query and return its rows as dictionaries keyed by column name.

        Raises:
            WarehouseStatementError: If the warehouse rejects the query
        """
        return self._run(sql, parameters, fetch=True)

    def _run(self, sql: str, parameters: Optional[Sequence[Any]] = None, fetch: bool = False):
        redacted = redact_credentials(sql)
        self.logger.debug("Executing SQL", sql=redacted)
        cursor = self._raw.cursor()
        try:
            if parameters is None:
                cursor.execute(sql)
            else:
                cursor.execute(sql, parameters)
            if not fetch:
                return None
            columns = [column[0] for column in cursor.description or []]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except Exception as e:
            self.logger.error("SQL statement failed", sql=redacted, error=str(e))
            raise WarehouseStatementError(f"Statement failed: {e}", sql=redacted) from e
        finally:
            cursor.close()

    def table_exists(self, table: TableName) -> bool:
        """Check the catalog for a table, in the current schema when the name is unqualified."""
        rows = self.query(TABLE_EXISTS_SQL, (table.catalog_schema, table.catalog_table))
        return len(rows) > 0

    def resolve_schema(self, source: str) -> StructType:
        """
        Resolve the Spark schema of a table or parenthesized query without reading rows.

        Raises:
            WarehouseStatementError: If the source cannot be queried
            SchemaMappingError: If a column has an unsupported type
        """
        sql = f"SELECT * FROM {source} WHERE 1=0"
        self.logger.debug("Resolving schema", sql=sql)
        cursor = self._raw.cursor()
        try:
            cursor.execute(sql)
            description = cursor.description or []
        except Exception as e:
            raise WarehouseStatementError(f"Could not resolve schema of {source}: {e}", sql=sql) from e
        finally:
            cursor.close()

        fields = []
        for column in description:
            null_ok = column[6] if len(column) > 6 else None
            fields.append(from_redshift_column(
                name=column[0],
                type_code=column[1],
                internal_size=column[3] if len(column) > 3 else None,
                precision=column[4] if len(column) > 4 else None,
                scale=column[5] if len(column) > 5 else None,
                nullable=null_ok is not False,
            ))
        return StructType(fields)

    def close(self) -> None:
        """Close the physical connection; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        try:
            self._raw.close()
        except Exception as e:
            self.logger.warning("Failed to close Redshift connection", error=str(e))


class RedshiftConnectionManager:
    """
    Opens warehouse connections for reads and writes.

    The driver is injected: any DB-API 2.0 ``connect(dsn, **kwargs)`` callable
    works, psycopg2 is used by default.
    """

    def __init__(self, url: str, driver_factory: Optional[DriverFactory] = None,
                 query_timeout: Optional[int] = None):
        self.dsn = normalize_url(url)
        self.driver_factory = driver_factory or psycopg2.connect
        self.query_timeout = query_timeout
        self.logger = logger.bind(component="RedshiftConnectionManager")

    def _connect_kwargs(self) -> Dict[str, Any]:
        if self.query_timeout is None:
            return {}
        return {"options": f"-c statement_timeout={int(self.query_timeout * 1000)}"}

    @contextmanager
    def connect(self) -> Iterator[RedshiftConnection]:
        """
        Open a connection for the duration of the block.

        The connection is closed on every exit path, including exceptions and
        interrupts raised inside the block.

        Raises:
            WarehouseStatementError: If the connection cannot be opened
        """
        try:
            raw = self.driver_factory(self.dsn, **self._connect_kwargs())
            raw.autocommit = True
        except Exception as e:
            self.logger.error("Failed to connect to Redshift", error=str(e))
            raise WarehouseStatementError(f"Failed to connect to Redshift: {e}") from e

        connection = RedshiftConnection(raw)
        self.logger.debug("Redshift connection opened")
        try:
            yield connection
        finally:
            connection.close()
            self.logger.debug("Redshift connection closed")
