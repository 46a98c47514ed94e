#
# The history store: one SQLite file, its importer and its query engine
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import time
import sqlite3
import logging

from . import ingest
from .errors import StoreError
from .lookup import ReverseLookup, DEFAULT_WORKERS
from .query import QueryEngine
from .records import HistoryRecord, from_epoch
from .schema import open_db, transaction

logger = logging.getLogger(__name__)


class Store:
    """
    A history database.

    SQLite serializes concurrent writers itself, so the store does no locking
    of its own; every write is a single explicit transaction. Reads run
    outside transactions and may or may not see a write in flight.
    """

    def __init__(self, db_file, lookup_workers=DEFAULT_WORKERS):
        self.db_file = db_file
        self.conn = open_db(db_file)
        self.engine = QueryEngine(self.conn)
        self.lookups = ReverseLookup(db_file, max_workers=lookup_workers)
        logger.debug(f"Opened history database {db_file}")

    def add_record(self, user, host, command, timestamp):
        """Insert one record; returns False when it is already stored"""
        return ingest.add_record(self.conn, HistoryRecord(user, host, command, timestamp))

    def add_batch(self, lines, user, host):
        """Import history lines, returning the BatchStats"""
        return ingest.add_batch(self.conn, lines, user, host)

    def ingest(self, lines, user, host):
        """Import history lines, returning a one sentence summary"""
        return self.add_batch(lines, user, host).summary()

    def query(self, params):
        return self.engine.run(params)

    def count(self):
        return self.conn.execute('SELECT COUNT(*) FROM history').fetchone()[0]

    def log_connection(self, remote_ip):
        """Record an inbound connection and resolve its address in the background"""
        try:
            with transaction(self.conn):
                self.conn.execute('INSERT INTO connlog (timestamp, remote) VALUES (?, ?)',
                                  (time.time(), remote_ip))
        except sqlite3.Error as e:
            raise StoreError(f"Could not log connection from {remote_ip}: {e}") from e
        logger.info(f"Connection from {remote_ip}")
        return self.lookups.submit(remote_ip)

    def connections(self, limit=20):
        """Most recent connections as (datetime, remote, reverse names) tuples"""
        rows = self.conn.execute(
            'SELECT timestamp, remote, reverse FROM connections ORDER BY timestamp DESC LIMIT ?', (limit,))
        return [(from_epoch(stamp), remote, reverse) for stamp, remote, reverse in rows]

    def close(self):
        self.lookups.shutdown(wait=True)
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def open_store(config):
    """Open the store described by a Config"""
    return Store(config.database, lookup_workers=config.lookup_workers)
