"""
Connection management for Redshift and the S3 staging area.
"""

from .redshift_connection import RedshiftConnection, RedshiftConnectionManager
from .s3_connection import S3ConnectionManager, create_s3_connection_from_params

__all__ = [
    "RedshiftConnection",
    "RedshiftConnectionManager",
    "S3ConnectionManager",
    "create_s3_connection_from_params",
]
