"""
Relation exposing a Redshift table or query to Spark.
"""

from functools import partial
from typing import Any, Optional, Sequence, Tuple

import structlog
from pyspark import RDD
from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import StructType

from .common.connections.redshift_connection import DriverFactory, RedshiftConnectionManager
from .common.connections.s3_connection import create_s3_connection_from_params
from .common.models.filters import Filter, row_matches
from .common.models.interfaces import (
    BaseRelation, Capability, InsertableRelation, PrunedFilteredScan,
)
from .common.models.parameters import Parameters, SaveMode
from .common.monitoring.metrics_collector import MetricsCollector
from .ingestion.redshift_loader import ObjectStoreFactory, RedshiftWriter
from .ingestion.redshift_unloader import RedshiftUnloader, prune_schema

logger = structlog.get_logger(__name__)


def _project(indices: Tuple[int, ...], values: Tuple[Any, ...]) -> Tuple[Any, ...]:
    return tuple(values[i] for i in indices)


class RedshiftRelation(BaseRelation, PrunedFilteredScan, InsertableRelation):
    """
    A Redshift table (or query) that Spark can scan and insert into.

    The schema is the user-supplied one when given, otherwise it is resolved
    from Redshift on first use.
    """

    capabilities = frozenset({Capability.PRUNED_FILTERED_SCAN, Capability.INSERTABLE})

    def __init__(self, spark: SparkSession, params: Parameters, user_schema: Optional[StructType] = None,
                 driver_factory: Optional[DriverFactory] = None,
                 object_store_factory: Optional[ObjectStoreFactory] = None,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.spark = spark
        self.params = params
        self.driver_factory = driver_factory
        self.object_store_factory = object_store_factory or create_s3_connection_from_params
        self.metrics_collector = metrics_collector
        self._schema = user_schema
        self.logger = logger.bind(component="RedshiftRelation", source=params.source_expression)

    def _connection_manager(self) -> RedshiftConnectionManager:
        return RedshiftConnectionManager(self.params.url, self.driver_factory, self.params.querytimeout)

    @property
    def schema(self) -> StructType:
        if self._schema is None:
            with self._connection_manager().connect() as conn:
                self._schema = conn.resolve_schema(self.params.source_expression)
            self.logger.debug("Resolved schema", columns=len(self._schema.fields))
        return self._schema

    def build_scan(self, required_columns: Sequence[str], filters: Sequence[Filter]) -> RDD:
        unloader = RedshiftUnloader(self.params, self._connection_manager(),
                                    self.object_store_factory, self.metrics_collector)
        return unloader.unload(self.spark, self.schema, required_columns, filters)

    def insert(self, data: DataFrame, overwrite: bool) -> None:
        mode = SaveMode.OVERWRITE if overwrite else SaveMode.APPEND
        writer = RedshiftWriter(self.driver_factory, self.object_store_factory, self.metrics_collector)
        writer.save_to_redshift(data, mode, self.params)

    def to_dataframe(self, required_columns: Optional[Sequence[str]] = None,
                     filters: Sequence[Filter] = ()) -> DataFrame:
        """
        Scan into a DataFrame, re-applying every filter to the scanned rows.

        Filters that could not be pushed into the UNLOAD are only enforced
        here, so the result is correct whichever filters Redshift evaluated.
        """
        columns = list(required_columns) if required_columns is not None else self.schema.names
        filters = tuple(filters)

        scanned = list(columns)
        for f in filters:
            for name in f.references():
                if name not in scanned:
                    scanned.append(name)

        rdd = self.build_scan(scanned, filters)
        if filters:
            rdd = rdd.filter(partial(row_matches, tuple(scanned), filters))
        if scanned != columns:
            rdd = rdd.map(partial(_project, tuple(scanned.index(c) for c in columns)))
        return self.spark.createDataFrame(rdd, prune_schema(self.schema, columns))
