import json
import re
import unittest
from unittest.mock import MagicMock

from pyspark.sql.types import (
    BinaryType, DateType, IntegerType, StringType, StructField, StructType,
)

from spark_redshift.common.exceptions import (
    ConfigurationError, LoadVerificationError, SchemaMappingError, StagingIOError,
    TableExistsError, WarehouseStatementError,
)
from spark_redshift.common.models.parameters import Parameters, SaveMode
from spark_redshift.common.monitoring.metrics_collector import MetricsCollector
from spark_redshift.ingestion.redshift_loader import RedshiftWriter
from tests.unit.fakes import DEFAULT_OPTIONS, FakeDataFrame, FakeDriver, FakeObjectStore

SUFFIX = r"[0-9a-f]{32}"
LOAD_ERROR = {
    "query": 1234, "err_code": 1216, "err_reason": "Invalid digit, Value 'x'   ",
    "colname": "testint   ", "line_number": 1, "raw_field_value": "x",
}


class TestRedshiftWriter(unittest.TestCase):
    """Unit tests for RedshiftWriter"""

    def setUp(self):
        """Set up fakes for Redshift, S3 and the DataFrame"""
        self.store = FakeObjectStore()
        self.schema = StructType([
            StructField("testint", IntegerType(), True),
            StructField("TestString", StringType(), True, {"maxlength": 20}),
            StructField("testdate", DateType(), True),
        ])
        self.df = FakeDataFrame(self.schema, self.store)
        self.options = dict(DEFAULT_OPTIONS)

    def make_writer(self, **driver_kwargs):
        driver_kwargs.setdefault("existing_tables", {"test_table"})
        self.driver = FakeDriver(**driver_kwargs)
        self.metrics = MetricsCollector()
        return RedshiftWriter(self.driver, lambda params: self.store, self.metrics)

    def params(self, **extra):
        return Parameters.from_options(dict(self.options, **extra))

    def assert_statements(self, patterns):
        statements = self.driver.statements
        self.assertEqual(len(statements), len(patterns), statements)
        for statement, pattern in zip(statements, patterns):
            self.assertRegex(statement, re.compile("^" + pattern, re.DOTALL))

    def staging_suffix(self):
        return re.search(r"test_table_staging_(" + SUFFIX + ")", self.driver.statements[0]).group(1)

    # ==========================================
    # OVERWRITE
    # ==========================================

    def test_overwrite_issues_expected_statements(self):
        """Test the statement sequence of a successful replace"""
        writer = self.make_writer()
        result = writer.save_to_redshift(
            self.df, SaveMode.OVERWRITE,
            self.params(postactions="GRANT SELECT ON %s TO jeremy", diststyle="KEY", distkey="testint"),
        )

        self.assert_statements([
            rf"DROP TABLE IF EXISTS test_table_staging_{SUFFIX}$",
            rf"CREATE TABLE IF NOT EXISTS test_table_staging_{SUFFIX} \(.*\) DISTSTYLE KEY DISTKEY \(testint\)$",
            rf"COPY test_table_staging_{SUFFIX} FROM 's3://test-bucket/temp-dir/[^']+/manifest.json'",
            r"SELECT \* FROM stl_load_errors WHERE query = pg_last_query_id\(\)$",
            rf"BEGIN; ALTER TABLE test_table RENAME TO test_table_backup_{SUFFIX}; "
            rf"ALTER TABLE test_table_staging_{SUFFIX} RENAME TO test_table; "
            rf"DROP TABLE test_table_backup_{SUFFIX}; END;$",
            rf"DROP TABLE IF EXISTS test_table_staging_{SUFFIX}$",
            r"GRANT SELECT ON test_table TO jeremy$",
        ])
        suffix = self.staging_suffix()
        self.assertIn(f"test_table_backup_{suffix}", self.driver.statements[4])
        self.assertIn(f"test_table_staging_{suffix}", self.driver.statements[5])
        self.assertEqual(len(self.driver.catalog_probes), 1)
        self.assertTrue(self.driver.all_closed_once())
        self.assertEqual(len(self.driver.connections), 1)

        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['load_type'], 'staging')
        self.assertEqual(result['files_staged'], 2)
        self.assertEqual(self.metrics.counters['load.status.success'], 1)

    def test_overwrite_sequence_without_verification_query(self):
        """Test that statements apart from the verification query are drop, create, copy, swap, drop"""
        writer = self.make_writer()
        writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params())

        kinds = [s.split(" ")[0] for s in self.driver.statements if "stl_load_errors" not in s]
        self.assertEqual(kinds, ["DROP", "CREATE", "COPY", "BEGIN;", "DROP"])

    def test_overwrite_of_missing_table_renames_staging(self):
        """Test that a missing target is created by renaming the staging table"""
        writer = self.make_writer(existing_tables=set())
        writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params())

        self.assert_statements([
            r"DROP TABLE IF EXISTS test_table_staging_",
            r"CREATE TABLE IF NOT EXISTS test_table_staging_",
            r"COPY test_table_staging_",
            r"SELECT \* FROM stl_load_errors",
            rf"ALTER TABLE test_table_staging_{SUFFIX} RENAME TO test_table$",
            r"DROP TABLE IF EXISTS test_table_staging_",
        ])

    def test_overwrite_ignores_usestagingtable_false(self):
        writer = self.make_writer()
        result = writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params(usestagingtable="false"))
        self.assertEqual(result['load_type'], 'staging')
        self.assertTrue(any(s.startswith("BEGIN; ALTER TABLE") for s in self.driver.statements))

    # ==========================================
    # FAILURES
    # ==========================================

    def test_failed_copy_is_cleaned_up(self):
        """Test that a failed COPY checks the error log, drops staging and re-raises"""
        writer = self.make_writer(fail_on=[r"^COPY"], load_errors=[LOAD_ERROR])

        with self.assertRaises(WarehouseStatementError) as context:
            writer.save_to_redshift(self.df, SaveMode.OVERWRITE,
                                    self.params(postactions="GRANT SELECT ON %s TO jeremy"))

        self.assert_statements([
            r"DROP TABLE IF EXISTS test_table_staging_",
            r"CREATE TABLE IF NOT EXISTS test_table_staging_",
            r"COPY test_table_staging_",
            r".*FROM stl_load_errors",
            r"DROP TABLE IF EXISTS test_table_staging_",
        ])
        self.assertNotIsInstance(context.exception, LoadVerificationError)
        self.assertEqual(context.exception.load_errors, [LOAD_ERROR])
        self.assertTrue(self.driver.all_closed_once())
        self.assertEqual(self.metrics.counters['load.status.failed'], 1)

    def test_load_errors_after_successful_copy(self):
        """Test that rows in stl_load_errors fail the load even though COPY returned"""
        writer = self.make_writer(load_errors=[LOAD_ERROR])

        with self.assertRaises(LoadVerificationError) as context:
            writer.save_to_redshift(self.df, SaveMode.OVERWRITE,
                                    self.params(postactions="GRANT SELECT ON %s TO jeremy"))

        self.assert_statements([
            r"DROP TABLE IF EXISTS test_table_staging_",
            r"CREATE TABLE IF NOT EXISTS test_table_staging_",
            r"COPY test_table_staging_",
            r".*FROM stl_load_errors",
            r"DROP TABLE IF EXISTS test_table_staging_",
        ])
        self.assertIn("Invalid digit", str(context.exception))
        self.assertIn("CREDENTIALS '***'", context.exception.sql)
        self.assertEqual(context.exception.load_errors, [LOAD_ERROR])

    def test_failed_swap_still_drops_staging(self):
        writer = self.make_writer(fail_on=[r"^BEGIN"])
        with self.assertRaises(WarehouseStatementError):
            writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params())
        self.assertRegex(self.driver.statements[-1], r"^DROP TABLE IF EXISTS test_table_staging_")

    def test_cleanup_failure_does_not_mask_error(self):
        """Test that a failed staging drop after a failed COPY re-raises the COPY error"""
        writer = self.make_writer(fail_on=[r"^COPY"],
                                  fail_on_repeat=[r"^DROP TABLE IF EXISTS test_table_staging_"])

        with self.assertRaises(WarehouseStatementError) as context:
            writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params())

        self.assertTrue(context.exception.sql.startswith("COPY test_table_staging_"))
        self.assertRegex(self.driver.statements[-1], r"^DROP TABLE IF EXISTS test_table_staging_")
        self.assertTrue(self.driver.all_closed_once())

    def test_failed_rollback_does_not_mask_error(self):
        writer = self.make_writer()
        conn = MagicMock()
        conn.execute.side_effect = WarehouseStatementError("rollback failed")
        writer._rollback_quietly(conn, writer.logger)
        conn.execute.assert_called_once_with("ROLLBACK")

    def test_staging_write_failure_runs_no_statement(self):
        """Test that a failed staging write aborts before any warehouse statement"""
        writer = self.make_writer()
        df = FakeDataFrame(self.schema, self.store, fail_write=True)

        with self.assertRaises(StagingIOError):
            writer.save_to_redshift(df, SaveMode.OVERWRITE, self.params())

        self.assertEqual(self.driver.statements, [])
        self.assertTrue(self.driver.all_closed_once())

    # ==========================================
    # APPEND
    # ==========================================

    def test_append_loads_directly(self):
        """Test that append copies straight into an existing (empty) target"""
        writer = self.make_writer()
        result = writer.save_to_redshift(self.df, SaveMode.APPEND,
                                         self.params(preactions="DELETE FROM %s WHERE testint < 0"))

        self.assert_statements([
            r'CREATE TABLE IF NOT EXISTS test_table \("testint" INTEGER, "TestString" VARCHAR\(20\), '
            r'"testdate" DATE\)$',
            r"DELETE FROM test_table WHERE testint < 0$",
            r"BEGIN$",
            r"COPY test_table FROM ",
            r"SELECT \* FROM stl_load_errors",
            r"COMMIT$",
        ])
        self.assertFalse(any("staging" in s for s in self.driver.statements))
        self.assertEqual(result['load_type'], 'direct')

    def test_direct_append_with_load_errors_rolls_back(self):
        """Test that rows COPY accepted are not kept when stl_load_errors reports rejects"""
        writer = self.make_writer(load_errors=[LOAD_ERROR])

        with self.assertRaises(LoadVerificationError) as context:
            writer.save_to_redshift(self.df, SaveMode.APPEND,
                                    self.params(extracopyoptions="MAXERROR 10",
                                                postactions="GRANT SELECT ON %s TO jeremy"))

        self.assert_statements([
            r"CREATE TABLE IF NOT EXISTS test_table \(",
            r"BEGIN$",
            r"COPY test_table FROM .* MAXERROR 10$",
            r"SELECT \* FROM stl_load_errors",
            r"ROLLBACK$",
        ])
        self.assertNotIn("COMMIT", self.driver.statements)
        self.assertEqual(context.exception.load_errors, [LOAD_ERROR])
        self.assertTrue(self.driver.all_closed_once())

    def test_direct_append_failed_copy_rolls_back_first(self):
        """Test that the aborted transaction is rolled back before the error log is read"""
        writer = self.make_writer(fail_on=[r"^COPY"], load_errors=[LOAD_ERROR])

        with self.assertRaises(WarehouseStatementError) as context:
            writer.save_to_redshift(self.df, SaveMode.APPEND, self.params())

        self.assert_statements([
            r"CREATE TABLE IF NOT EXISTS test_table \(",
            r"BEGIN$",
            r"COPY test_table FROM ",
            r"ROLLBACK$",
            r".*FROM stl_load_errors",
        ])
        self.assertEqual(context.exception.load_errors, [LOAD_ERROR])

    def test_append_through_staging_table(self):
        writer = self.make_writer()
        writer.save_to_redshift(self.df, SaveMode.APPEND, self.params(usestagingtable="true"))

        self.assert_statements([
            r"DROP TABLE IF EXISTS test_table_staging_",
            r"CREATE TABLE IF NOT EXISTS test_table_staging_",
            r"COPY test_table_staging_",
            r"SELECT \* FROM stl_load_errors",
            r"CREATE TABLE IF NOT EXISTS test_table \(",
            rf"BEGIN; INSERT INTO test_table SELECT \* FROM test_table_staging_{SUFFIX}; END;$",
            r"DROP TABLE IF EXISTS test_table_staging_",
        ])

    # ==========================================
    # SAVE MODES
    # ==========================================

    def test_error_if_exists(self):
        """Test that only the existence probe runs when the table exists"""
        writer = self.make_writer()
        with self.assertRaises(TableExistsError):
            writer.save_to_redshift(self.df, SaveMode.ERROR_IF_EXISTS, self.params())

        self.assertEqual(self.driver.statements, [])
        self.assertEqual(len(self.driver.catalog_probes), 1)
        self.assertEqual(self.store.files, {})
        self.assertTrue(self.driver.all_closed_once())

    def test_error_if_exists_on_missing_table_loads(self):
        writer = self.make_writer(existing_tables=set())
        result = writer.save_to_redshift(self.df, "error", self.params())
        self.assertEqual(result['status'], 'success')
        self.assertRegex(self.driver.statements[0], r"^CREATE TABLE IF NOT EXISTS test_table \(")

    def test_ignore_existing_table(self):
        writer = self.make_writer()
        result = writer.save_to_redshift(self.df, SaveMode.IGNORE, self.params())

        self.assertEqual(result['status'], 'skipped')
        self.assertEqual(self.driver.statements, [])
        self.assertEqual(self.store.files, {})

    # ==========================================
    # VALIDATION BEFORE I/O
    # ==========================================

    def test_ambiguous_columns_rejected_before_connecting(self):
        schema = StructType([StructField("a", IntegerType()), StructField("A", IntegerType())])
        writer = self.make_writer()
        with self.assertRaises(ConfigurationError):
            writer.save_to_redshift(FakeDataFrame(schema, self.store), SaveMode.APPEND, self.params())
        self.assertEqual(self.driver.connections, [])

    def test_unmapped_type_rejected_before_connecting(self):
        schema = StructType([StructField("payload", BinaryType())])
        writer = self.make_writer()
        with self.assertRaises(SchemaMappingError):
            writer.save_to_redshift(FakeDataFrame(schema, self.store), SaveMode.APPEND, self.params())
        self.assertEqual(self.driver.connections, [])

    def test_query_cannot_be_saved(self):
        del self.options["dbtable"]
        writer = self.make_writer()
        with self.assertRaises(ConfigurationError) as context:
            writer.save_to_redshift(self.df, SaveMode.APPEND, self.params(query="select 1"))
        self.assertIn("dbtable", str(context.exception))

    # ==========================================
    # STAGED FILES
    # ==========================================

    def test_staged_files_and_manifest(self):
        """Test the Avro staging write and the COPY manifest"""
        writer = self.make_writer()
        writer.save_to_redshift(self.df, SaveMode.OVERWRITE, self.params())

        self.assertEqual(self.df.saved_to[0][0], "avro")
        self.assertEqual(self.df.projections[0], (
            "`testint` AS `testint`",
            "`TestString` AS `teststring`",
            "CAST(UNIX_DATE(`testdate`) AS BIGINT) * 86400000 AS `testdate`",
        ))

        manifests = self.store.find("manifest.json")
        self.assertEqual(len(manifests), 1)
        entries = json.loads(self.store.files[manifests[0]])["entries"]
        self.assertEqual(len(entries), 2)
        for entry in entries:
            self.assertTrue(entry["url"].startswith("s3://test-bucket/temp-dir/"))
            self.assertTrue(entry["url"].endswith(".avro"))
            self.assertTrue(entry["mandatory"])

        self.assertIn(f"FROM 's3://{manifests[0]}'", self.driver.statements[2])
        self.assertEqual(self.store.lifecycle_checks, [("s3a://test-bucket/temp-dir", None)])

    def test_empty_dataframe_skips_copy(self):
        writer = self.make_writer()
        df = FakeDataFrame(self.schema, self.store, part_files=0)
        result = writer.save_to_redshift(df, SaveMode.OVERWRITE, self.params())

        self.assertFalse(any(s.startswith("COPY") for s in self.driver.statements))
        self.assertEqual(result['files_staged'], 0)
        manifest = self.store.files[self.store.find("manifest.json")[0]]
        self.assertEqual(json.loads(manifest), {"entries": []})


if __name__ == '__main__':
    unittest.main()
