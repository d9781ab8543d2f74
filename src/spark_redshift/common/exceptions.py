"""
Exceptions raised by the Redshift data source.
"""

from typing import Any, Dict, List, Optional


class RedshiftConnectorError(Exception):
    """Base class for all errors raised by the connector."""
    pass


class ConfigurationError(RedshiftConnectorError, ValueError):
    """Raised for bad or missing parameters, before any I/O happens."""
    pass


class SchemaMappingError(RedshiftConnectorError, ValueError):
    """Raised when a column type has no Redshift (or Spark) counterpart."""
    pass


class TableExistsError(RedshiftConnectorError):
    """Raised when saving with ErrorIfExists and the target table exists."""
    pass


class StagingIOError(RedshiftConnectorError):
    """Raised when staging data in S3 fails."""
    pass


class WarehouseStatementError(RedshiftConnectorError):
    """
    Raised when Redshift rejects a statement.

    Attributes:
        sql: The statement that failed, with credentials redacted
        load_errors: Rows from stl_load_errors describing a failed COPY, if any
    """

    def __init__(self, message: str, sql: Optional[str] = None,
                 load_errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.sql = sql
        self.load_errors = load_errors or []


class LoadVerificationError(WarehouseStatementError):
    """Raised when COPY returned normally but stl_load_errors has rows for it."""
    pass
