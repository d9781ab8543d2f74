"""
Spark data source for Amazon Redshift, staging data through S3.
"""

from .api import read_redshift, save_to_redshift
from .common.exceptions import (
    ConfigurationError, LoadVerificationError, RedshiftConnectorError, SchemaMappingError,
    StagingIOError, TableExistsError, WarehouseStatementError,
)
from .common.models.parameters import Parameters, SaveMode
from .default_source import DefaultSource
from .relation import RedshiftRelation

__version__ = "0.1.0"

__all__ = [
    "read_redshift",
    "save_to_redshift",
    "DefaultSource",
    "RedshiftRelation",
    "Parameters",
    "SaveMode",
    "RedshiftConnectorError",
    "ConfigurationError",
    "SchemaMappingError",
    "TableExistsError",
    "StagingIOError",
    "WarehouseStatementError",
    "LoadVerificationError",
]
