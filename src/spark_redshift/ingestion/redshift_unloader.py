# src/spark_redshift/ingestion/redshift_unloader.py

import time
from typing import Callable, List, Optional, Sequence

import structlog
from pyspark import RDD
from pyspark.sql import SparkSession
from pyspark.sql.types import StructType

from ..common.connections.redshift_connection import RedshiftConnectionManager
from ..common.connections.s3_connection import S3ConnectionManager
from ..common.exceptions import ConfigurationError
from ..common.models.filters import Filter
from ..common.models.parameters import Parameters
from ..common.monitoring.metrics_collector import MetricsCollector
from ..common.utils.filter_pushdown import compile_filter
from ..common.utils.sql_generator import count_query, unload_query
from ..common.utils.staging import (
    allocate_staging_path, fix_s3_url, parse_manifest, to_engine_uri, unload_manifest_uri,
)
from .record_reader import RecordReader

logger = structlog.get_logger(__name__)

ObjectStoreFactory = Callable[[Parameters], S3ConnectionManager]


def prune_schema(schema: StructType, columns: Sequence[str]) -> StructType:
    """
    Select columns from a schema, in the order given.

    Raises:
        ConfigurationError: If a column is not in the schema
    """
    by_name = {field.name: field for field in schema.fields}
    missing = [column for column in columns if column not in by_name]
    if missing:
        raise ConfigurationError(f"Columns {missing} do not exist in the Redshift schema")
    return StructType([by_name[column] for column in columns])


class RedshiftUnloader:
    """
    Runs scans by UNLOADing a table or query into a fresh staging path and
    reading the unloaded files back as an RDD.

    The UNLOAD has completed before the RDD is returned; the files are read
    lazily and in parallel by Spark.
    """

    def __init__(self, params: Parameters, connection_manager: RedshiftConnectionManager,
                 object_store_factory: ObjectStoreFactory,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.params = params
        self.connection_manager = connection_manager
        self.object_store_factory = object_store_factory
        self.metrics_collector = metrics_collector
        self.logger = logger.bind(component="RedshiftUnloader", source=params.source_expression)

    def unload(self, spark: SparkSession, schema: StructType, required_columns: Sequence[str],
               filters: Sequence[Filter]) -> RDD:
        """
        Scan the source with column pruning and filter pushdown.

        Args:
            spark: Active Spark session
            schema: Full schema of the source, used to render filter literals
            required_columns: Columns to return, in order
            filters: Filters to push down where possible

        Returns:
            RDD of tuples matching the pruned schema

        Raises:
            WarehouseStatementError: If Redshift rejects the UNLOAD (not retried)
            StagingIOError: If the unload manifest cannot be read
        """
        start_time = time.time()
        columns = list(required_columns)
        pushed = self._count_pushed(filters, schema)

        if not columns:
            return self._count_only(spark, schema, filters)

        pruned = prune_schema(schema, columns)
        staging_path = allocate_staging_path(self.params.tempdir)
        sql = unload_query(
            source=self.params.source_expression,
            columns=columns,
            filters=filters,
            schema=schema,
            credentials=self.params.credentials_string(),
            destination=fix_s3_url(staging_path),
            max_file_size_mb=self.params.unloadmaxfilesizemb,
        )

        self.logger.info("Unloading from Redshift", staging_path=staging_path,
                         columns=len(columns), filters_pushed=pushed, filters_total=len(filters))
        with self.connection_manager.connect() as conn:
            conn.execute(sql)

        files = self._read_manifest(staging_path)
        sc = spark.sparkContext
        if not files:
            self.logger.info("UNLOAD produced no files", staging_path=staging_path)
            rdd = sc.emptyRDD()
        else:
            rdd = sc.wholeTextFiles(",".join(files)).flatMap(RecordReader(pruned))

        self._report({
            'source': self.params.source_expression,
            'files': len(files),
            'filters_pushed': pushed,
            'duration_seconds': time.time() - start_time,
        })
        return rdd

    def _count_only(self, spark: SparkSession, schema: StructType, filters: Sequence[Filter]) -> RDD:
        """A scan projecting no columns only needs the number of matching rows."""
        sql = count_query(self.params.source_expression, filters, schema)
        with self.connection_manager.connect() as conn:
            rows = conn.query(sql)
        count = int(next(iter(rows[0].values()))) if rows else 0
        self.logger.info("Counted rows for empty projection", count=count)
        return spark.sparkContext.range(count).map(lambda _: ())

    def _read_manifest(self, staging_path: str) -> List[str]:
        store = self.object_store_factory(self.params)
        content = store.get_file(unload_manifest_uri(staging_path))
        return [to_engine_uri(url, self.params.tempdir) for url in parse_manifest(content)]

    @staticmethod
    def _count_pushed(filters: Sequence[Filter], schema: StructType) -> int:
        column_types = {field.name: field.dataType for field in schema.fields}
        return sum(1 for f in filters if compile_filter(f, column_types) is not None)

    def _report(self, result) -> None:
        if self.metrics_collector is not None:
            self.metrics_collector.record_unload_metrics(result)
