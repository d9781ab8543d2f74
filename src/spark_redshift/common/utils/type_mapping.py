"""
Mapping between Spark logical types and Redshift physical column types.
"""

from typing import Dict, List, Optional

from pyspark.sql.types import (
    BooleanType, ByteType, DataType, DateType, DecimalType, DoubleType, FloatType,
    IntegerType, LongType, ShortType, StringType, StructField, StructType, TimestampType,
)

from ..exceptions import ConfigurationError, SchemaMappingError

MAXLENGTH_KEY = "maxlength"
MAX_VARCHAR_LENGTH = 65535
DEFAULT_DECIMAL = (18, 0)
MAX_DECIMAL_PRECISION = 38

# Spark type class -> Redshift type, for types with a fixed rendering
SPARK_TO_REDSHIFT: Dict[type, str] = {
    BooleanType: "BOOLEAN",
    ByteType: "SMALLINT",  # Redshift has no single-byte integer
    ShortType: "SMALLINT",
    IntegerType: "INTEGER",
    LongType: "BIGINT",
    FloatType: "REAL",
    DoubleType: "DOUBLE PRECISION",
    DateType: "DATE",
    TimestampType: "TIMESTAMP",
}

# Postgres wire type OIDs as reported by the driver in cursor.description
BOOL_OID = 16
CHAR_OID = 18
NAME_OID = 19
INT8_OID = 20
INT2_OID = 21
INT4_OID = 23
TEXT_OID = 25
FLOAT4_OID = 700
FLOAT8_OID = 701
BPCHAR_OID = 1042
VARCHAR_OID = 1043
DATE_OID = 1082
TIMESTAMP_OID = 1114
TIMESTAMPTZ_OID = 1184
NUMERIC_OID = 1700

REDSHIFT_OID_TO_SPARK: Dict[int, DataType] = {
    BOOL_OID: BooleanType(),
    INT2_OID: ShortType(),
    INT4_OID: IntegerType(),
    INT8_OID: LongType(),
    FLOAT4_OID: FloatType(),
    FLOAT8_OID: DoubleType(),
    CHAR_OID: StringType(),
    NAME_OID: StringType(),
    TEXT_OID: StringType(),
    BPCHAR_OID: StringType(),
    VARCHAR_OID: StringType(),
    DATE_OID: DateType(),
    TIMESTAMP_OID: TimestampType(),
    TIMESTAMPTZ_OID: TimestampType(),
}

_LENGTH_BOUND_OIDS = (BPCHAR_OID, VARCHAR_OID)


def quote_identifier(name: str) -> str:
    """Double-quote an identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def to_redshift_type(field: StructField) -> str:
    """
    Get the Redshift column type for a Spark field.

    Raises:
        SchemaMappingError: If the Spark type has no Redshift counterpart
    """
    data_type = field.dataType
    if isinstance(data_type, StringType):
        max_length = _max_length(field)
        return f"VARCHAR({max_length})" if max_length is not None else "TEXT"
    if isinstance(data_type, DecimalType):
        return f"DECIMAL({data_type.precision},{data_type.scale})"
    for spark_type, redshift_type in SPARK_TO_REDSHIFT.items():
        if isinstance(data_type, spark_type):
            return redshift_type
    raise SchemaMappingError(
        f"Don't know how to save column {field.name!r} of type {data_type.simpleString()} to Redshift"
    )


def _max_length(field: StructField) -> Optional[int]:
    metadata = field.metadata or {}
    if MAXLENGTH_KEY not in metadata:
        return None
    value = metadata[MAXLENGTH_KEY]
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= MAX_VARCHAR_LENGTH:
        raise ConfigurationError(
            f"maxlength of column {field.name!r} must be an integer between 1 and "
            f"{MAX_VARCHAR_LENGTH}, got {value!r}"
        )
    return value


def schema_string(schema: StructType) -> str:
    """Render the column list of a CREATE TABLE statement."""
    columns = []
    for field in schema.fields:
        column = f"{quote_identifier(field.name)} {to_redshift_type(field)}"
        if not field.nullable:
            column += " NOT NULL"
        columns.append(column)
    return ", ".join(columns)


def with_max_lengths(schema: StructType, max_lengths: Dict[str, int]) -> StructType:
    """
    Return a copy of the schema with maxlength metadata set on the given columns.

    Raises:
        ConfigurationError: If a column is unknown or is not a string column
    """
    by_name = {field.name: field for field in schema.fields}
    unknown = [name for name in max_lengths if name not in by_name]
    if unknown:
        raise ConfigurationError(f"maxlength given for unknown columns: {unknown}")

    fields = []
    for field in schema.fields:
        if field.name in max_lengths:
            if not isinstance(field.dataType, StringType):
                raise ConfigurationError(
                    f"maxlength only applies to string columns, {field.name!r} is "
                    f"{field.dataType.simpleString()}"
                )
            metadata = dict(field.metadata or {})
            metadata[MAXLENGTH_KEY] = max_lengths[field.name]
            field = StructField(field.name, field.dataType, field.nullable, metadata)
            _max_length(field)
        fields.append(field)
    return StructType(fields)


def from_redshift_column(name: str, type_code: int, internal_size: Optional[int] = None,
                         precision: Optional[int] = None, scale: Optional[int] = None,
                         nullable: bool = True) -> StructField:
    """
    Build the Spark field for a column described by the driver.

    Character lengths are kept as maxlength metadata so that writing the
    schema back produces the same VARCHAR width.

    Raises:
        SchemaMappingError: If the type code is not a supported Redshift type
    """
    if type_code == NUMERIC_OID:
        if precision and precision > 0:
            data_type = DecimalType(min(precision, MAX_DECIMAL_PRECISION), scale or 0)
        else:
            data_type = DecimalType(*DEFAULT_DECIMAL)
        return StructField(name, data_type, nullable)

    if type_code not in REDSHIFT_OID_TO_SPARK:
        raise SchemaMappingError(f"Unsupported Redshift type (OID {type_code}) for column {name!r}")

    metadata = {}
    if type_code in _LENGTH_BOUND_OIDS and internal_size and internal_size > 0:
        metadata[MAXLENGTH_KEY] = internal_size
    return StructField(name, REDSHIFT_OID_TO_SPARK[type_code], nullable, metadata)


def _backtick(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def staging_projection(schema: StructType) -> List[str]:
    """
    Spark SQL expressions that prepare a DataFrame for the Avro staging files.

    Column names are lower-cased because COPY ... AVRO 'auto' matches fields
    to columns by name. Dates and timestamps become epoch milliseconds in UTC
    (COPY runs with TIMEFORMAT 'epochmillisecs'), so timestamps keep millisecond
    precision. Decimals become strings, since COPY does not read Avro logical
    types.
    """
    expressions = []
    for field in schema.fields:
        source = _backtick(field.name)
        alias = _backtick(field.name.lower())
        if isinstance(field.dataType, DateType):
            # Days since epoch, so the session time zone cannot shift the date
            expressions.append(f"CAST(UNIX_DATE({source}) AS BIGINT) * 86400000 AS {alias}")
        elif isinstance(field.dataType, TimestampType):
            expressions.append(f"UNIX_MILLIS({source}) AS {alias}")
        elif isinstance(field.dataType, DecimalType):
            expressions.append(f"CAST({source} AS STRING) AS {alias}")
        else:
            expressions.append(f"{source} AS {alias}")
    return expressions
