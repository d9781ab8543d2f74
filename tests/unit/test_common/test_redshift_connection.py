import unittest
from unittest.mock import MagicMock, patch

from pyspark.sql.types import DecimalType, IntegerType, StringType

from spark_redshift.common.connections.redshift_connection import (
    RedshiftConnectionManager, normalize_url,
)
from spark_redshift.common.exceptions import ConfigurationError, WarehouseStatementError
from spark_redshift.common.models.parameters import TableName
from spark_redshift.common.utils.type_mapping import INT4_OID, NUMERIC_OID, VARCHAR_OID
from tests.unit.fakes import FakeDriver, FakeDriverError

URL = "jdbc:redshift://redshifthost:5439/database?user=username&password=password"


class TestNormalizeUrl(unittest.TestCase):

    def test_jdbc_url(self):
        self.assertEqual(normalize_url(URL),
                         "postgresql://redshifthost:5439/database?user=username&password=password")

    def test_other_accepted_schemes(self):
        self.assertEqual(normalize_url("redshift://h/db"), "postgresql://h/db")
        self.assertEqual(normalize_url("postgresql://h/db"), "postgresql://h/db")

    def test_rejected_scheme(self):
        with self.assertRaises(ConfigurationError):
            normalize_url("mysql://h/db")


class TestRedshiftConnectionManager(unittest.TestCase):

    def setUp(self):
        self.driver = FakeDriver(
            existing_tables={"test_table"},
            schemas={"test_table": [
                ("id", INT4_OID, None, 4, None, None, None),
                ("name", VARCHAR_OID, None, 64, None, None, None),
                ("amount", NUMERIC_OID, None, 8, 10, 2, None),
            ]},
            fail_on=[r"^BROKEN"],
        )
        self.manager = RedshiftConnectionManager(URL, driver_factory=self.driver)

    # ==========================================
    # CONNECTION LIFECYCLE
    # ==========================================

    def test_connection_is_autocommit_and_closed_once(self):
        """Test that the connection is closed exactly once after use"""
        with self.manager.connect() as conn:
            conn.execute("SELECT 1")
            self.assertTrue(self.driver.connections[0].autocommit)

        self.assertTrue(conn.closed)
        conn.close()
        self.assertEqual(self.driver.connections[0].close_count, 1)

    def test_connection_closed_when_block_raises(self):
        """Test that errors inside the block still close the connection"""
        with self.assertRaises(KeyError):
            with self.manager.connect():
                raise KeyError("boom")
        self.assertTrue(self.driver.all_closed_once())

    def test_dsn_and_timeout_passed_to_driver(self):
        manager = RedshiftConnectionManager(URL, driver_factory=self.driver, query_timeout=30)
        with manager.connect():
            pass
        connection = self.driver.connections[0]
        self.assertTrue(connection.dsn.startswith("postgresql://redshifthost:5439/database"))
        self.assertEqual(connection.kwargs, {"options": "-c statement_timeout=30000"})

    def test_connect_failure(self):
        failing = MagicMock(side_effect=FakeDriverError("no route to host"))
        manager = RedshiftConnectionManager(URL, driver_factory=failing)
        with self.assertRaises(WarehouseStatementError):
            with manager.connect():
                pass

    @patch('spark_redshift.common.connections.redshift_connection.psycopg2.connect')
    def test_psycopg2_is_the_default_driver(self, mock_connect):
        with RedshiftConnectionManager(URL).connect():
            pass
        mock_connect.assert_called_once()
        mock_connect.return_value.close.assert_called_once()

    # ==========================================
    # STATEMENTS
    # ==========================================

    def test_failed_statement_is_wrapped(self):
        """Test that driver errors become WarehouseStatementError with redacted SQL"""
        with self.manager.connect() as conn:
            with self.assertRaises(WarehouseStatementError) as context:
                conn.execute("BROKEN COPY t FROM 'x' CREDENTIALS 'secret'")
        self.assertEqual(context.exception.sql, "BROKEN COPY t FROM 'x' CREDENTIALS '***'")
        self.assertIsInstance(context.exception.__cause__, FakeDriverError)

    def test_query_returns_dicts(self):
        self.driver.row_count = 7
        with self.manager.connect() as conn:
            rows = conn.query("SELECT count(*) FROM t")
        self.assertEqual(rows, [{"count": 7}])

    def test_table_exists(self):
        with self.manager.connect() as conn:
            self.assertTrue(conn.table_exists(TableName.parse("test_table")))
            self.assertTrue(conn.table_exists(TableName.parse("Test_Table")))
            self.assertFalse(conn.table_exists(TableName.parse("public.other")))
        self.assertEqual(len(self.driver.catalog_probes), 3)
        self.assertEqual(self.driver.statements, [])

    def test_resolve_schema(self):
        with self.manager.connect() as conn:
            schema = conn.resolve_schema("test_table")

        self.assertEqual(schema.names, ["id", "name", "amount"])
        self.assertEqual(schema["id"].dataType, IntegerType())
        self.assertEqual(schema["name"].dataType, StringType())
        self.assertEqual(schema["name"].metadata, {"maxlength": 64})
        self.assertEqual(schema["amount"].dataType, DecimalType(10, 2))
        self.assertTrue(schema["id"].nullable)
        self.assertEqual(self.driver.sql, ["SELECT * FROM test_table WHERE 1=0"])


if __name__ == '__main__':
    unittest.main()
