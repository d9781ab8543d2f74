"""
Writer that loads Spark DataFrames into Redshift.

Data is staged in S3 as Avro files and a COPY manifest, then loaded with COPY
either directly into the target or into a staging table that replaces or is
appended to the target.
"""

import posixpath
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from pyspark.sql import DataFrame
from pyspark.sql.types import StructType

from ..common.connections.redshift_connection import (
    DriverFactory, RedshiftConnection, RedshiftConnectionManager,
)
from ..common.connections.s3_connection import S3ConnectionManager, create_s3_connection_from_params
from ..common.exceptions import (
    ConfigurationError, LoadVerificationError, StagingIOError, TableExistsError,
    WarehouseStatementError,
)
from ..common.models.parameters import Parameters, SaveMode, TableName
from ..common.monitoring.metrics_collector import MetricsCollector
from ..common.utils.sql_generator import (
    BEGIN_SQL, COMMIT_SQL, ROLLBACK_SQL, append_transaction_sql, check_ambiguous_columns, copy_sql,
    create_table_sql, drop_table_sql, load_errors_query, redact_credentials, rename_sql,
    render_action, transaction_sql,
)
from ..common.utils.staging import allocate_staging_path, build_manifest, fix_s3_url, manifest_uri
from ..common.utils.type_mapping import staging_projection

logger = structlog.get_logger(__name__)

ObjectStoreFactory = Callable[[Parameters], S3ConnectionManager]

STAGING_FORMAT = "avro"


class RedshiftWriter:
    """
    Saves DataFrames to Redshift.

    Features:
    - All four save modes, with the existence probe as the only catalog access
    - Atomic replace through a staging table and a rename-based swap
    - Append directly into the target, or through a staging table on request
    - Load verification against stl_load_errors after every COPY
    - Staging table cleanup on every exit path
    """

    def __init__(self, driver_factory: Optional[DriverFactory] = None,
                 object_store_factory: Optional[ObjectStoreFactory] = None,
                 metrics_collector: Optional[MetricsCollector] = None):
        """
        Initialize the writer.

        Args:
            driver_factory: DB-API connect callable, psycopg2.connect by default
            object_store_factory: Builds the S3 client wrapper from parameters
            metrics_collector: Optional metrics collector
        """
        self.driver_factory = driver_factory
        self.object_store_factory = object_store_factory or create_s3_connection_from_params
        self.metrics_collector = metrics_collector
        self.logger = logger.bind(component="RedshiftWriter")

    def save_to_redshift(self, df: DataFrame, mode: Any, params: Parameters) -> Dict[str, Any]:
        """
        Save a DataFrame to the table named by params.dbtable.

        Args:
            df: DataFrame to save
            mode: SaveMode (or its name)
            params: Validated parameters

        Returns:
            Dictionary with load metrics

        Raises:
            ConfigurationError: Bad parameters or ambiguous column names; nothing was run
            SchemaMappingError: A column type cannot be stored in Redshift; nothing was run
            TableExistsError: ErrorIfExists and the target exists
            StagingIOError: Staging the data failed; no warehouse statement was run
            WarehouseStatementError: A statement failed; the staging table was dropped
            LoadVerificationError: COPY returned but stl_load_errors reported rows
        """
        start_time = time.time()
        table = params.table
        if table is None:
            raise ConfigurationError(
                "For save operations you must specify a Redshift table name with the 'dbtable' parameter"
            )
        mode = SaveMode.parse(mode)
        log = self.logger.bind(table=str(table), save_mode=mode.value)

        # Everything that can be rejected up front is checked before any I/O
        schema = df.schema
        check_ambiguous_columns(schema)
        create_table_sql(schema, table, params.diststyle, params.distkey, params.sortkeyspec)
        projection = staging_projection(schema)
        credentials = params.credentials_string()

        use_staging = self._use_staging_table(mode, params, log)
        result = {
            'table': str(table),
            'save_mode': mode.value,
            'load_type': 'staging' if use_staging else 'direct',
            'files_staged': 0,
            'status': 'running',
        }

        manager = RedshiftConnectionManager(params.url, self.driver_factory, params.querytimeout)
        try:
            with manager.connect() as conn:
                exists = conn.table_exists(table)
                if exists and mode == SaveMode.ERROR_IF_EXISTS:
                    raise TableExistsError(
                        f"Table {table} already exists! (SaveMode is set to ErrorIfExists)"
                    )
                if exists and mode == SaveMode.IGNORE:
                    log.info("Table exists and SaveMode is Ignore, not saving")
                    result.update(status='skipped', load_type='none',
                                  duration_seconds=time.time() - start_time)
                    self._report(result)
                    return result

                store = self.object_store_factory(params)
                store.check_lifecycle(params.tempdir, params.tempdirlifecycledays)
                manifest, file_count = self._stage(df, projection, params, store, log)
                result['files_staged'] = file_count

                if use_staging:
                    self._load_via_staging(conn, table, schema, params, credentials, manifest,
                                           file_count, replace=(mode == SaveMode.OVERWRITE),
                                           target_exists=exists, log=log)
                else:
                    self._load_direct(conn, table, schema, params, credentials, manifest,
                                      file_count, log)

            result.update(status='success', duration_seconds=time.time() - start_time)
            log.info("Save to Redshift completed", **result)
            self._report(result)
            return result

        except Exception as e:
            result.update(status='failed', error=str(e), duration_seconds=time.time() - start_time)
            log.error("Save to Redshift failed", error=str(e))
            self._report(result)
            raise

    def _use_staging_table(self, mode: SaveMode, params: Parameters, log) -> bool:
        if mode == SaveMode.OVERWRITE:
            if params.usestagingtable is False:
                log.warning("usestagingtable=false is ignored: overwrites always load through a "
                            "staging table so the target is replaced atomically")
            return True
        return params.usestagingtable is True

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def _stage(self, df: DataFrame, projection: List[str], params: Parameters,
               store: S3ConnectionManager, log) -> Tuple[str, int]:
        """
        Write the DataFrame as Avro under a fresh staging path, plus a COPY manifest.

        Returns:
            (s3:// manifest URI, number of staged files)
        """
        staging_path = allocate_staging_path(params.tempdir)
        log.info("Staging data in S3", staging_path=staging_path)
        try:
            df.selectExpr(*projection).write.format(STAGING_FORMAT).save(staging_path)
        except Exception as e:
            log.error("Failed to stage data", staging_path=staging_path, error=str(e))
            raise StagingIOError(f"Failed to write staging files to {staging_path}: {e}") from e

        files = [uri for uri in store.list_children(staging_path) if _is_part_file(uri)]
        uri = manifest_uri(staging_path)
        store.put_file(uri, build_manifest(files))
        log.info("Staging files written", file_count=len(files), manifest=uri)
        return fix_s3_url(uri), len(files)

    # ------------------------------------------------------------------
    # Warehouse side
    # ------------------------------------------------------------------

    def _load_direct(self, conn: RedshiftConnection, table: TableName, schema: StructType,
                     params: Parameters, credentials: str, manifest: str, file_count: int,
                     log) -> None:
        conn.execute(create_table_sql(schema, table, params.diststyle, params.distkey,
                                      params.sortkeyspec))
        self._run_actions(conn, params.preactions, table)
        # The target is live, so rows of a COPY that fails verification must not stay committed
        self._copy_and_verify(conn, table, manifest, file_count, credentials, params, log,
                              transactional=True)
        self._run_actions(conn, params.postactions, table)

    def _load_via_staging(self, conn: RedshiftConnection, table: TableName, schema: StructType,
                          params: Parameters, credentials: str, manifest: str, file_count: int,
                          replace: bool, target_exists: bool, log) -> None:
        suffix = uuid.uuid4().hex
        staging = table.with_suffix(f"_staging_{suffix}")
        backup = table.with_suffix(f"_backup_{suffix}")
        log = log.bind(staging_table=str(staging))

        try:
            conn.execute(drop_table_sql(staging))
            conn.execute(create_table_sql(schema, staging, params.diststyle, params.distkey,
                                          params.sortkeyspec))
            self._run_actions(conn, params.preactions, staging)
            self._copy_and_verify(conn, staging, manifest, file_count, credentials, params, log)

            if replace:
                if target_exists:
                    conn.execute(transaction_sql(table, staging, backup))
                else:
                    conn.execute(rename_sql(staging, table))
            else:
                conn.execute(create_table_sql(schema, table, params.diststyle, params.distkey,
                                              params.sortkeyspec))
                conn.execute(append_transaction_sql(table, staging))
        finally:
            self._drop_quietly(conn, staging, log)

        self._run_actions(conn, params.postactions, table)

    def _copy_and_verify(self, conn: RedshiftConnection, table: TableName, manifest: str,
                         file_count: int, credentials: str, params: Parameters, log,
                         transactional: bool = False) -> None:
        """
        COPY the staged files, then check stl_load_errors.

        COPY can return normally while rows were rejected (MAXERROR in
        extracopyoptions), so the error log is always consulted. When
        transactional, COPY and the check run between BEGIN and COMMIT and any
        failure rolls the COPY back.
        """
        if file_count == 0:
            log.info("No staged files, skipping COPY", table=str(table))
            return

        sql = copy_sql(table, manifest, credentials, params.extracopyoptions)
        if transactional:
            conn.execute(BEGIN_SQL)
        try:
            conn.execute(sql)
        except WarehouseStatementError as e:
            # stl_load_errors cannot be read inside the aborted transaction
            if transactional:
                self._rollback_quietly(conn, log)
            e.load_errors = self._load_errors(conn, log)
            if e.load_errors:
                log.error("COPY failed", load_error=_describe_load_error(e.load_errors[0]))
            raise

        try:
            errors = conn.query(load_errors_query())
            if errors:
                raise LoadVerificationError(
                    f"COPY into {table} reported {len(errors)} load error(s): "
                    f"{_describe_load_error(errors[0])}",
                    sql=redact_credentials(sql),
                    load_errors=errors,
                )
        except WarehouseStatementError:
            if transactional:
                self._rollback_quietly(conn, log)
            raise

        if transactional:
            conn.execute(COMMIT_SQL)

    def _load_errors(self, conn: RedshiftConnection, log) -> List[Dict[str, Any]]:
        try:
            return conn.query(load_errors_query())
        except WarehouseStatementError as e:
            log.warning("Could not read stl_load_errors", error=str(e))
            return []

    def _run_actions(self, conn: RedshiftConnection, actions: List[str], table: TableName) -> None:
        for action in actions:
            conn.execute(render_action(action, table))

    def _rollback_quietly(self, conn: RedshiftConnection, log) -> None:
        try:
            conn.execute(ROLLBACK_SQL)
        except WarehouseStatementError as e:
            log.warning("Failed to roll back", error=str(e))

    def _drop_quietly(self, conn: RedshiftConnection, staging: TableName, log) -> None:
        try:
            conn.execute(drop_table_sql(staging))
        except WarehouseStatementError as e:
            log.warning("Failed to drop staging table", error=str(e))

    def _report(self, result: Dict[str, Any]) -> None:
        if self.metrics_collector is not None:
            self.metrics_collector.record_load_metrics(result)


def _is_part_file(uri: str) -> bool:
    name = posixpath.basename(uri)
    return name.startswith("part-") and name.endswith(".avro")


def _describe_load_error(row: Dict[str, Any]) -> str:
    def field(name):
        value = row.get(name)
        return value.strip() if isinstance(value, str) else value

    return (
        f"{field('err_reason')} (code {field('err_code')}, column {field('colname')}, "
        f"line {field('line_number')}, value {field('raw_field_value')!r})"
    )
