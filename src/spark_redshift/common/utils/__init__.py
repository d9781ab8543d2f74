"""
SQL generation, type mapping and staging helpers.
"""

from .type_mapping import from_redshift_column, schema_string, to_redshift_type, with_max_lengths
from .filter_pushdown import build_where_clause, compile_filter
from .staging import allocate_staging_path, fix_s3_url

__all__ = [
    "from_redshift_column",
    "schema_string",
    "to_redshift_type",
    "with_max_lengths",
    "build_where_clause",
    "compile_filter",
    "allocate_staging_path",
    "fix_s3_url",
]
