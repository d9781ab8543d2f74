"""
Translation of engine filters into a Redshift WHERE clause.

A filter that cannot be rendered safely (unknown column, a literal that does
not fit the column type, an empty IN list, ...) compiles to None and is simply
not pushed down. The engine re-applies every filter after the scan, so
dropping one only costs transfer volume, never correctness.
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence

import structlog
from pyspark.sql.types import (
    BooleanType, ByteType, DataType, DateType, DecimalType, DoubleType, FloatType,
    IntegerType, LongType, ShortType, StringType, StructType, TimestampType,
)

from ..models.filters import (
    And, EqualTo, Filter, GreaterThan, GreaterThanOrEqual, In, IsNotNull, IsNull,
    LessThan, LessThanOrEqual, Not, NotEqualTo, Or, StringContains, StringEndsWith,
    StringStartsWith,
)
from .type_mapping import quote_identifier

logger = structlog.get_logger(__name__)

_COMPARISON_OPERATORS = {
    EqualTo: "=",
    NotEqualTo: "<>",
    GreaterThan: ">",
    GreaterThanOrEqual: ">=",
    LessThan: "<",
    LessThanOrEqual: "<=",
}

_INTEGRAL_TYPES = (ByteType, ShortType, IntegerType, LongType)
_FRACTIONAL_TYPES = (FloatType, DoubleType)


def _quote_literal(text: str) -> str:
    return "'" + text.replace("\\", "\\\\").replace("'", "''") + "'"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def render_literal(value: Any, data_type: DataType) -> Optional[str]:
    """
    Render a Python value as a SQL literal of the given column type.

    Returns None when the value does not fit the type.
    """
    if value is None:
        return None
    if isinstance(data_type, StringType):
        return _quote_literal(value) if isinstance(value, str) else None
    if isinstance(data_type, BooleanType):
        return ("true" if value else "false") if isinstance(value, bool) else None
    if isinstance(value, bool):
        return None
    if isinstance(data_type, _INTEGRAL_TYPES):
        return str(value) if isinstance(value, int) else None
    if isinstance(data_type, _FRACTIONAL_TYPES):
        if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
            return None
        return repr(float(value))
    if isinstance(data_type, DecimalType):
        if isinstance(value, (int, Decimal)) or (isinstance(value, float) and math.isfinite(value)):
            return str(value)
        return None
    if isinstance(data_type, TimestampType):
        if not isinstance(value, datetime):
            return None
        # Redshift TIMESTAMP columns hold UTC wall-clock time
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return _quote_literal(value.isoformat(sep=" "))
    if isinstance(data_type, DateType):
        # A datetime against a date column compares with the time of day, which a
        # date literal cannot express
        if isinstance(value, datetime) or not isinstance(value, date):
            return None
        return _quote_literal(value.isoformat())
    return None


def compile_filter(filter_: Filter, column_types: Dict[str, DataType]) -> Optional[str]:
    """
    Compile one filter to SQL, or None if it cannot be pushed down.

    Args:
        filter_: Filter to compile
        column_types: Column name to Spark type, for rendering literals
    """
    if isinstance(filter_, And) or isinstance(filter_, Or):
        left = compile_filter(filter_.left, column_types)
        right = compile_filter(filter_.right, column_types)
        if left is None or right is None:
            return None
        keyword = "AND" if isinstance(filter_, And) else "OR"
        return f"({left}) {keyword} ({right})"

    if isinstance(filter_, Not):
        child = compile_filter(filter_.child, column_types)
        return None if child is None else f"NOT ({child})"

    attribute = getattr(filter_, "attribute", None)
    if attribute not in column_types:
        return None
    column = quote_identifier(attribute)
    data_type = column_types[attribute]

    if isinstance(filter_, IsNull):
        return f"{column} IS NULL"
    if isinstance(filter_, IsNotNull):
        return f"{column} IS NOT NULL"

    operator = _COMPARISON_OPERATORS.get(type(filter_))
    if operator is not None:
        literal = render_literal(filter_.value, data_type)
        return None if literal is None else f"{column} {operator} {literal}"

    if isinstance(filter_, In):
        if not filter_.values:
            return None
        literals = [render_literal(value, data_type) for value in filter_.values]
        if any(literal is None for literal in literals):
            return None
        return f"{column} IN ({', '.join(literals)})"

    if isinstance(filter_, (StringStartsWith, StringEndsWith, StringContains)):
        if not isinstance(data_type, StringType) or not isinstance(filter_.value, str):
            return None
        pattern = _escape_like(filter_.value)
        if isinstance(filter_, StringStartsWith):
            pattern = pattern + "%"
        elif isinstance(filter_, StringEndsWith):
            pattern = "%" + pattern
        else:
            pattern = "%" + pattern + "%"
        return f"{column} LIKE {_quote_literal(pattern)}"

    return None


def build_where_clause(filters: Sequence[Filter], schema: Optional[StructType]) -> str:
    """
    Build 'WHERE a AND b ...' from the filters that can be pushed down.

    Returns an empty string when none can.
    """
    if not filters or schema is None:
        return ""
    column_types = {field.name: field.dataType for field in schema.fields}

    compiled = []
    for filter_ in filters:
        sql = compile_filter(filter_, column_types)
        if sql is None:
            logger.debug("Filter not pushed down", filter=repr(filter_))
            continue
        compiled.append(sql)

    if not compiled:
        return ""
    return "WHERE " + " AND ".join(compiled)
