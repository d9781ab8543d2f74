"""
Convenience functions for reading from and saving to Redshift.

Example:
    options = {
        "url": "jdbc:redshift://cluster:5439/dev?user=etl&password=secret",
        "tempdir": "s3a://bucket/spark-redshift/",
        "dbtable": "public.events",
        "aws_iam_role": "arn:aws:iam::123456789012:role/redshift-s3",
    }
    df = read_redshift(spark, options)
    save_to_redshift(df, {**options, "dbtable": "public.events_copy"}, mode="overwrite")
"""

from typing import Any, Dict, Mapping, Optional, Sequence

from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import StructType

from .common.connections.redshift_connection import DriverFactory
from .common.models.filters import Filter
from .common.models.parameters import Parameters, SaveMode
from .common.monitoring.metrics_collector import MetricsCollector
from .ingestion.redshift_loader import ObjectStoreFactory, RedshiftWriter
from .default_source import DefaultSource


def read_redshift(spark: SparkSession, options: Mapping[str, Any],
                  schema: Optional[StructType] = None,
                  columns: Optional[Sequence[str]] = None,
                  filters: Sequence[Filter] = (),
                  driver_factory: Optional[DriverFactory] = None,
                  object_store_factory: Optional[ObjectStoreFactory] = None,
                  metrics_collector: Optional[MetricsCollector] = None) -> DataFrame:
    """
    Read a Redshift table or query into a DataFrame.

    Args:
        spark: Active Spark session
        options: Data source options (url, tempdir, dbtable or query, ...)
        schema: Schema to use instead of resolving it from Redshift
        columns: Columns to read, all by default
        filters: Filters to push down and apply

    Returns:
        DataFrame with the requested columns
    """
    source = DefaultSource(driver_factory, object_store_factory, metrics_collector)
    relation = source.create_relation(spark, options, schema)
    return relation.to_dataframe(columns, filters)


def save_to_redshift(df: DataFrame, options: Mapping[str, Any], mode: Optional[Any] = None,
                     driver_factory: Optional[DriverFactory] = None,
                     object_store_factory: Optional[ObjectStoreFactory] = None,
                     metrics_collector: Optional[MetricsCollector] = None) -> Dict[str, Any]:
    """
    Save a DataFrame to the table named by the 'dbtable' option.

    Without an explicit mode the 'overwrite' option decides between
    overwrite and append.

    Returns:
        Dictionary with load metrics
    """
    params = Parameters.from_options(options)
    if mode is None:
        mode = SaveMode.OVERWRITE if params.overwrite else SaveMode.APPEND
    writer = RedshiftWriter(driver_factory, object_store_factory, metrics_collector)
    return writer.save_to_redshift(df, mode, params)
