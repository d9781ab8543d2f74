"""
Decoding of the text files written by UNLOAD ... ESCAPE.

Records end at an unescaped newline and fields are separated by '|'. A
backslash makes the next character literal, which is how embedded newlines,
pipes and backslashes survive. A field reading exactly '@NULL@' is null.
"""

import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, List, Optional, Tuple

from pyspark.sql.types import (
    BooleanType, ByteType, DateType, DecimalType, DoubleType, FloatType, IntegerType,
    LongType, ShortType, StringType, StructType, TimestampType,
)

from ..common.exceptions import SchemaMappingError, StagingIOError
from ..common.utils.sql_generator import NULL_MARKER

FIELD_DELIMITER = "|"
ESCAPE_CHAR = "\\"

_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d{1,6}))?"
    r"(?:([+-])(\d{2})(?::?(\d{2}))?)?$"
)


def split_records(content: str) -> Iterator[List[str]]:
    """Split file content into records, each a list of unescaped field strings."""
    fields: List[str] = []
    current: List[str] = []
    escaped = False
    for char in content:
        if escaped:
            current.append(char)
            escaped = False
        elif char == ESCAPE_CHAR:
            escaped = True
        elif char == FIELD_DELIMITER:
            fields.append("".join(current))
            current = []
        elif char == "\n":
            fields.append("".join(current))
            yield fields
            fields, current = [], []
        else:
            current.append(char)
    if current or fields:
        fields.append("".join(current))
        yield fields


def parse_boolean(text: str) -> bool:
    lowered = text.lower()
    if lowered in ("t", "true"):
        return True
    if lowered in ("f", "false"):
        return False
    raise ValueError(f"Invalid boolean {text!r}")


def parse_date(text: str) -> date:
    return date.fromisoformat(text)


def parse_timestamp(text: str) -> datetime:
    """
    Parse 'YYYY-MM-DD HH:MM:SS[.ffffff][+HH[:MM]]'.

    The result is always timezone-aware. Values without an offset are UTC, which
    is how writes store them (COPY reads epoch milliseconds as UTC).
    """
    match = _TIMESTAMP_RE.match(text)
    if not match:
        raise ValueError(f"Invalid timestamp {text!r}")
    year, month, day, hour, minute, second, fraction, sign, off_h, off_m = match.groups()
    microsecond = int(fraction.ljust(6, "0")) if fraction else 0
    tzinfo = timezone.utc
    if sign:
        offset = timedelta(hours=int(off_h), minutes=int(off_m or 0))
        tzinfo = timezone(-offset if sign == "-" else offset)
    return datetime(int(year), int(month), int(day), int(hour), int(minute), int(second),
                    microsecond, tzinfo=tzinfo)


def converter_for(data_type) -> Callable[[str], Any]:
    """
    Get the function that turns unloaded text into a value of the Spark type.

    Raises:
        SchemaMappingError: If the type cannot come out of an UNLOAD
    """
    if isinstance(data_type, StringType):
        return str
    if isinstance(data_type, BooleanType):
        return parse_boolean
    if isinstance(data_type, (ByteType, ShortType, IntegerType, LongType)):
        return int
    if isinstance(data_type, (FloatType, DoubleType)):
        return float
    if isinstance(data_type, DecimalType):
        return Decimal
    if isinstance(data_type, DateType):
        return parse_date
    if isinstance(data_type, TimestampType):
        return parse_timestamp
    raise SchemaMappingError(f"Cannot read {data_type.simpleString()} values from Redshift")


class RecordReader:
    """
    Decodes whole UNLOAD files into tuples matching a schema.

    Instances are shipped to executors, so they hold only the schema and the
    converters derived from it.
    """

    def __init__(self, schema: StructType):
        self.schema = schema
        self.converters = [converter_for(field.dataType) for field in schema.fields]

    def decode(self, content: str) -> Iterator[Tuple[Any, ...]]:
        expected = len(self.converters)
        for fields in split_records(content):
            if len(fields) != expected:
                raise StagingIOError(
                    f"Unloaded record has {len(fields)} fields, expected {expected}"
                )
            yield tuple(self._convert(convert, text) for convert, text in zip(self.converters, fields))

    @staticmethod
    def _convert(convert: Callable[[str], Any], text: str) -> Optional[Any]:
        if text == NULL_MARKER:
            return None
        return convert(text)

    def __call__(self, path_and_content: Tuple[str, str]) -> Iterator[Tuple[Any, ...]]:
        """Decode one (path, content) pair as produced by wholeTextFiles."""
        _, content = path_and_content
        return self.decode(content)
