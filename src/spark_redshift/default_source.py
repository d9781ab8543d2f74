"""
Entry point that turns an option map into Redshift relations.
"""

from typing import Any, Mapping, Optional

import structlog
from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import StructType

from .common.connections.redshift_connection import DriverFactory
from .common.connections.s3_connection import create_s3_connection_from_params
from .common.models.parameters import Parameters, SaveMode
from .common.monitoring.metrics_collector import MetricsCollector
from .ingestion.redshift_loader import ObjectStoreFactory, RedshiftWriter
from .relation import RedshiftRelation

logger = structlog.get_logger(__name__)


class DefaultSource:
    """
    Redshift data source.

    The driver and object-store factories can be replaced, which is how
    tests run without a cluster or a bucket.
    """

    def __init__(self, driver_factory: Optional[DriverFactory] = None,
                 object_store_factory: Optional[ObjectStoreFactory] = None,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.driver_factory = driver_factory
        self.object_store_factory = object_store_factory or create_s3_connection_from_params
        self.metrics_collector = metrics_collector

    def create_relation(self, spark: SparkSession, options: Mapping[str, Any],
                        schema: Optional[StructType] = None) -> RedshiftRelation:
        """
        Create a relation for reading.

        Raises:
            ConfigurationError: If the options are invalid
        """
        params = Parameters.from_options(options)
        return RedshiftRelation(spark, params, schema, self.driver_factory,
                                self.object_store_factory, self.metrics_collector)

    def create_relation_for_save(self, spark: SparkSession, mode: Any, options: Mapping[str, Any],
                                 data: DataFrame) -> RedshiftRelation:
        """
        Save data with the given mode and return a relation over the saved table.

        Raises:
            ConfigurationError: If the options are invalid or name no table
        """
        params = Parameters.from_options(options)
        writer = RedshiftWriter(self.driver_factory, self.object_store_factory, self.metrics_collector)
        writer.save_to_redshift(data, SaveMode.parse(mode), params)
        return RedshiftRelation(spark, params, data.schema, self.driver_factory,
                                self.object_store_factory, self.metrics_collector)
