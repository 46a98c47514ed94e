#!/usr/bin/env python3
"""
Storage tests for hhistdb: schema, migrations, import and the connection log
"""

import unittest
import tempfile
import os
import sys
import socket
import sqlite3
import shutil
from datetime import datetime, timezone
from unittest.mock import patch, MagicMock

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from hhistdb import schema
from hhistdb.errors import ParseError, StoreError, IncompatibleVersionError
from hhistdb.ingest import parse_line, is_duplicate
from hhistdb.query import QueryParams, QueryType
from hhistdb.records import HistoryRecord, parse_timestamp
from hhistdb.store import Store

HISTORY = [
    "   99  2015-10-12T12:00:00+0000 make test",
    "  100  2015-10-12T12:00:05+0000 git status",
    "  101  2015-10-12T12:00:10+0000 ls -la",
]

# Layout of the first released version: no explicit id, connlog with a port
V1_SCHEMA = [
    '''CREATE TABLE history (user TEXT NOT NULL, host TEXT NOT NULL, command TEXT NOT NULL,
                             timestamp REAL NOT NULL, UNIQUE (user, command, timestamp))''',
    'CREATE TABLE admin (key TEXT PRIMARY KEY, value TEXT)',
    'CREATE TABLE connlog (timestamp REAL NOT NULL, remote TEXT NOT NULL, port INTEGER)',
]


class TestHHistDB(unittest.TestCase):

    def setUp(self):
        """Set up test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.db_file = os.path.join(self.temp_dir, 'history.sqlite3')

    def tearDown(self):
        """Clean up test environment"""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def legacy_db(self, version, statements, rows=()):
        conn = sqlite3.connect(self.db_file)
        for statement in statements:
            conn.execute(statement)
        conn.execute("INSERT INTO admin (key, value) VALUES ('version', ?)", (version,))
        conn.executemany('INSERT INTO history (user, host, command, timestamp) VALUES (?, ?, ?, ?)', rows)
        conn.commit()
        return conn

    def test_safe_makedirs(self):
        """Test safe directory creation"""
        test_dir = os.path.join(self.temp_dir, 'a', 'b')

        schema.safe_makedirs(test_dir)
        self.assertTrue(os.path.exists(test_dir))

        # Should handle existing directory
        schema.safe_makedirs(test_dir)

        with patch('os.makedirs', side_effect=PermissionError("Test error")):
            with self.assertRaises(StoreError):
                schema.safe_makedirs('/invalid/path')

    def test_connect_db_error(self):
        with patch('sqlite3.connect', side_effect=sqlite3.Error("Test error")):
            with self.assertRaises(StoreError):
                schema.connect_db('/invalid/path.db')

    def test_new_database(self):
        """A new file gets the current schema, in a directory created on demand"""
        db_file = os.path.join(self.temp_dir, 'nested', 'dir', 'h.sqlite3')
        with Store(db_file) as store:
            self.assertEqual(schema.read_version(store.conn), schema.SCHEMA_VERSION)
            tables = {name for (name,) in store.conn.execute(
                "SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")}
            self.assertTrue({'history', 'admin', 'connlog', 'rlookup', 'connections'} <= tables)
            self.assertEqual(store.count(), 0)

        # Opening again must not touch the schema
        with Store(db_file) as store:
            self.assertFalse(schema.migrate(store.conn))

    def test_transaction_rollback(self):
        with Store(self.db_file) as store:
            with self.assertRaises(RuntimeError):
                with schema.transaction(store.conn):
                    store.conn.execute('INSERT INTO history (user, host, command, timestamp) VALUES (?, ?, ?, ?)',
                                       ('u', 'h', 'ls', 1.0))
                    raise RuntimeError("boom")
            self.assertEqual(store.count(), 0)
            self.assertFalse(store.conn.in_transaction)

    def test_migrate_from_version_1(self):
        """Row ids survive the upgrade, gaps included"""
        conn = self.legacy_db("1", V1_SCHEMA, [
            ('u', 'h', 'first', 1000.0),
            ('u', 'h', 'second', 1001.0),
            ('u', 'h', 'third', 1002.0),
        ])
        conn.execute("DELETE FROM history WHERE command = 'second'")
        conn.execute("INSERT INTO connlog (timestamp, remote, port) VALUES (1500.0, '10.0.0.1', 5555)")
        conn.commit()
        conn.close()

        with Store(self.db_file) as store:
            self.assertEqual(schema.read_version(store.conn), "3")
            self.assertEqual(store.count(), 2)
            self.assertEqual(store.query(QueryParams(QueryType.ROW, kappa=3)), b"third")
            self.assertEqual(store.connections(), [
                (datetime.fromtimestamp(1500.0, timezone.utc), '10.0.0.1', None)
            ])
            columns = [row[1] for row in store.conn.execute('PRAGMA table_info(connlog)')]
            self.assertEqual(columns, ['timestamp', 'remote'])

            # New rows continue after the highest id
            self.assertTrue(store.add_record('u', 'h', 'fourth', parse_timestamp("2020-01-01T00:00:00+0000")))
            self.assertEqual(store.query(QueryParams(QueryType.ROW, kappa=4)), b"fourth")

    def test_migrate_from_version_2(self):
        legacy_history = V1_SCHEMA[0]
        statements = [legacy_history, V1_SCHEMA[1], schema.CONNLOG_TABLE, schema.RLOOKUP_TABLE,
                      schema.CONNECTIONS_VIEW]
        self.legacy_db("2", statements, [('u', 'h', 'ls', 1000.0), ('u', 'h', 'pwd', 1001.0)]).close()

        with Store(self.db_file) as store:
            self.assertEqual(schema.read_version(store.conn), "3")
            self.assertEqual(store.query(QueryParams(QueryType.LASTK, kappa=5)), b"1 ls\n2 pwd")
            indexes = {name for (name,) in store.conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index'")}
            self.assertIn('idx_history_timestamp', indexes)

    def test_newer_version_refused(self):
        self.legacy_db("4", V1_SCHEMA).close()
        with self.assertRaises(IncompatibleVersionError):
            Store(self.db_file)

    def test_unreadable_version(self):
        self.legacy_db("banana", V1_SCHEMA).close()
        with self.assertRaises(StoreError):
            Store(self.db_file)

    def test_failed_migration_changes_nothing(self):
        """A step failing halfway leaves the old layout and version in place"""
        broken = [V1_SCHEMA[0], V1_SCHEMA[1], 'CREATE TABLE connlog (timestamp REAL NOT NULL, port INTEGER)']
        self.legacy_db("1", broken, [('u', 'h', 'ls', 1000.0)]).close()

        with self.assertRaises(StoreError):
            Store(self.db_file)

        conn = sqlite3.connect(self.db_file)
        self.assertEqual(schema.read_version(conn), "1")
        names = {name for (name,) in conn.execute("SELECT name FROM sqlite_master")}
        self.assertFalse({'connlog_new', 'rlookup', 'connections', 'history_new'} & names)
        columns = [row[1] for row in conn.execute('PRAGMA table_info(connlog)')]
        self.assertEqual(columns, ['timestamp', 'port'])
        self.assertEqual(conn.execute('SELECT COUNT(*) FROM history').fetchone()[0], 1)
        conn.close()

    def test_parse_line(self):
        record = parse_line(" 1004* 2015-10-12T14:00:00+0200 vim notes", "alice", "box")
        self.assertEqual(record.user, "alice")
        self.assertEqual(record.host, "box")
        self.assertEqual(record.command, "vim notes")
        self.assertEqual(record.epoch, 1444651200.0)

        record = parse_line("bob server-1.lan 2015-10-12T12:00:00+0000 uptime", "alice", "box")
        self.assertEqual((record.user, record.host, record.command), ("bob", "server-1.lan", "uptime"))

        self.assertIsNone(parse_line("just some text", "alice", "box"))
        with self.assertRaises(ParseError):
            parse_line("  5  2015-13-45T99:99:99+0000 ls", "alice", "box")

    def test_ingest(self):
        """Test importing history output"""
        with Store(self.db_file) as store:
            lines = HISTORY + ["  102  2015-10-12T12:00:15+0000 history",
                               "  103  2015-10-12T12:00:15+0000 history"]
            self.assertEqual(store.ingest(lines, "user", "test"),
                             "Processed 5 entries, successful 4, failed 1.")
            self.assertEqual(store.count(), 4)

            # Blank lines don't count, unknown lines fail, bytes are decoded
            lines = [b"", "   ", "garbage\n", b"user1 host1 2015-10-13T10:00:00+0000 htop\n"]
            self.assertEqual(store.ingest(lines, "user", "test"),
                             "Processed 2 entries, successful 1, failed 1.")
            self.assertEqual(store.query(QueryParams(QueryType.ROW, kappa=5)), b"htop")

    def test_ingest_is_idempotent(self):
        with Store(self.db_file) as store:
            store.ingest(HISTORY, "user", "test")
            stats = store.add_batch(HISTORY, "user", "test")
            self.assertEqual((stats.total, stats.succeeded, stats.failed, stats.duplicates), (3, 0, 3, 3))
            self.assertEqual(store.count(), 3)

    def test_duplicate_export_lines(self):
        line = "user1 host1 2015-10-13T10:00:00+0000 make -j8"
        with Store(self.db_file) as store:
            stats = store.add_batch([line, line], "user", "test")
            self.assertEqual((stats.total, stats.succeeded, stats.failed, stats.duplicates), (2, 1, 1, 1))
            self.assertEqual(store.query(QueryParams(QueryType.SEARCH, command="%make%")), b"1 make -j8")

    def test_bad_timestamp_rolls_back_batch(self):
        with Store(self.db_file) as store:
            with self.assertRaises(ParseError):
                store.ingest(HISTORY + ["  5  2015-13-45T99:99:99+0000 ls"], "user", "test")
            self.assertEqual(store.count(), 0)
            self.assertFalse(store.conn.in_transaction)

    def test_noise_is_not_a_timestamp(self):
        """Digit runs without a date shape fail on their own line only"""
        with Store(self.db_file) as store:
            self.assertEqual(store.ingest(HISTORY + ["1234567890123456789012345", "----------------------------"],
                                          "user", "test"),
                             "Processed 5 entries, successful 3, failed 2.")
            self.assertEqual(store.count(), 3)

    def test_busy_commit_rolls_back(self):
        """A COMMIT refused because of a reader leaves no open transaction behind"""
        with patch.object(schema, 'BUSY_TIMEOUT', 0.1):
            store = Store(self.db_file)
        try:
            reader = sqlite3.connect(self.db_file, isolation_level=None)
            reader.execute('BEGIN')
            reader.execute('SELECT * FROM history').fetchall()

            with self.assertRaises(StoreError):
                store.ingest(HISTORY, "user", "test")
            self.assertFalse(store.conn.in_transaction)
            self.assertEqual(store.count(), 0)

            reader.execute('ROLLBACK')
            reader.close()
            self.assertEqual(store.ingest(HISTORY, "user", "test"),
                             "Processed 3 entries, successful 3, failed 0.")
        finally:
            store.close()

    def test_add_record(self):
        moment = parse_timestamp("2015-01-01T01:01:00+0000")
        with Store(self.db_file) as store:
            self.assertTrue(store.add_record("user1", "host1", "htop", moment))
            # Same user, command and time from another host is the same entry
            self.assertFalse(store.add_record("user1", "host2", "htop", moment))
            self.assertEqual(store.count(), 1)

    def test_is_duplicate(self):
        conn = sqlite3.connect(':memory:')
        conn.execute('CREATE TABLE t (a INTEGER UNIQUE, b INTEGER NOT NULL)')
        conn.execute('INSERT INTO t VALUES (1, 1)')
        with self.assertRaises(sqlite3.IntegrityError) as caught:
            conn.execute('INSERT INTO t VALUES (1, 2)')
        self.assertTrue(is_duplicate(caught.exception))
        with self.assertRaises(sqlite3.IntegrityError) as caught:
            conn.execute('INSERT INTO t VALUES (2, NULL)')
        self.assertFalse(is_duplicate(caught.exception))
        conn.close()

    def test_history_record(self):
        moment = parse_timestamp("2015-10-12T12:00:00+0000")
        record = HistoryRecord("user1", "host1", "ls -la", moment, row_id=7)
        same = HistoryRecord("user1", "other", "ls -la", parse_timestamp("2015-10-12T14:00:00+0200"))
        self.assertEqual(record, same)
        self.assertEqual(len({record, same}), 1)

        data = record.to_dict()
        self.assertEqual(data['row'], 7)
        self.assertEqual(data['datetime'], "2015-10-12T12:00:00+0000")
        self.assertEqual(data['timestamp'], 1444651200.0)

    def test_log_connection(self):
        with Store(self.db_file) as store:
            store.lookups.resolver = MagicMock(return_value=("gw.example.com", ["gw"], ["10.0.0.1"]))

            self.assertEqual(store.log_connection("10.0.0.1").result(), "gw.example.com,gw")
            # Second time comes from the cache
            self.assertEqual(store.log_connection("10.0.0.1").result(), "gw.example.com,gw")
            store.lookups.resolver.assert_called_once_with("10.0.0.1")

            connections = store.connections()
            self.assertEqual(len(connections), 2)
            self.assertEqual([(remote, reverse) for _, remote, reverse in connections],
                             [("10.0.0.1", "gw.example.com,gw")] * 2)

    def test_failed_lookup_is_swallowed(self):
        with Store(self.db_file) as store:
            store.lookups.resolver = MagicMock(side_effect=socket.herror(1, "Unknown host"))
            self.assertIsNone(store.log_connection("192.0.2.7").result())
            self.assertEqual([(remote, reverse) for _, remote, reverse in store.connections()],
                             [("192.0.2.7", None)])


def run_tests():
    """Run the test suite"""
    print("🧪 Running hhistdb tests...")

    loader = unittest.TestLoader()
    suite = loader.loadTestsFromTestCase(TestHHistDB)
    for name in ('test_query', 'test_render', 'test_cli'):
        suite.addTests(loader.loadTestsFromName(name))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print(f"\n📊 Test Results:")
    print(f"   Tests run: {result.testsRun}")
    print(f"   Failures: {len(result.failures)}")
    print(f"   Errors: {len(result.errors)}")

    if result.failures:
        print(f"\n❌ Failures:")
        for test, traceback in result.failures:
            print(f"   {test}: {traceback}")

    if result.errors:
        print(f"\n❌ Errors:")
        for test, traceback in result.errors:
            print(f"   {test}: {traceback}")

    if result.wasSuccessful():
        print(f"\n✅ All tests passed!")
        return 0
    else:
        print(f"\n❌ Some tests failed!")
        return 1


if __name__ == '__main__':
    sys.exit(run_tests())
