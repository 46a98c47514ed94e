#
# Background reverse DNS lookups for the connection log
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import socket
import sqlite3
import logging
from concurrent.futures import ThreadPoolExecutor

from .errors import HistDBError
from .schema import connect_db, transaction

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 2


class ReverseLookup:
    """
    Fills the rlookup table from a small thread pool.

    Lookups are fire-and-forget: each one runs on its own database
    connection, and any failure is logged and swallowed so the next
    connection from the same address simply tries again.
    """

    def __init__(self, db_file, max_workers=DEFAULT_WORKERS, resolver=socket.gethostbyaddr):
        self.db_file = db_file
        self.resolver = resolver
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rlookup")

    def submit(self, ip):
        """Schedule a lookup for ip; returns the Future of the resolved names"""
        return self.executor.submit(self.resolve, ip)

    def resolve(self, ip):
        """Return the cached or freshly resolved names for ip, or None on failure"""
        conn = None
        try:
            conn = connect_db(self.db_file)
            cached = conn.execute('SELECT reverse FROM rlookup WHERE ip = ?', (ip,)).fetchone()
            if cached is not None:
                return cached[0]

            name, aliases, _ = self.resolver(ip)
            names = ",".join([name] + list(aliases))
            with transaction(conn):
                conn.execute('INSERT OR IGNORE INTO rlookup (ip, reverse) VALUES (?, ?)', (ip, names))
            logger.debug(f"Reverse lookup {ip} -> {names}")
            return names
        except (OSError, sqlite3.Error, HistDBError) as e:
            logger.info(f"Reverse lookup for {ip} failed: {e}")
            return None
        finally:
            if conn is not None:
                conn.close()

    def shutdown(self, wait=True):
        self.executor.shutdown(wait=wait)
