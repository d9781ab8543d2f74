"""
Moving data between Spark and Redshift: UNLOAD-based reads and COPY-based writes.
"""

from .record_reader import RecordReader
from .redshift_loader import RedshiftWriter
from .redshift_unloader import RedshiftUnloader

__all__ = [
    "RecordReader",
    "RedshiftWriter",
    "RedshiftUnloader",
]
