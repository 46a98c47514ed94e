#
# SQLite layout of the history database and its version migrations
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import sqlite3
import logging
from contextlib import contextmanager

from .errors import StoreError, IncompatibleVersionError

logger = logging.getLogger(__name__)

# Bump together with a new MIGRATIONS step. Older databases are upgraded in
# place on open; newer ones are refused.
SCHEMA_VERSION = "3"

# Seconds a connection waits on a locked database before giving up
BUSY_TIMEOUT = 30.0

HISTORY_TABLE = '''
    CREATE TABLE history (
        id        INTEGER PRIMARY KEY,
        user      TEXT NOT NULL,
        host      TEXT NOT NULL,
        command   TEXT NOT NULL,
        timestamp REAL NOT NULL,
        UNIQUE (user, command, timestamp)
    )
'''

HISTORY_INDEXES = [
    'CREATE INDEX idx_history_timestamp ON history(timestamp)',
    'CREATE INDEX idx_history_user_host ON history(user, host)',
]

ADMIN_TABLE = '''
    CREATE TABLE admin (
        key   TEXT PRIMARY KEY,
        value TEXT
    )
'''

CONNLOG_TABLE = '''
    CREATE TABLE connlog (
        timestamp REAL NOT NULL,
        remote    TEXT NOT NULL
    )
'''

RLOOKUP_TABLE = '''
    CREATE TABLE rlookup (
        ip      TEXT PRIMARY KEY,
        reverse TEXT
    )
'''

CONNECTIONS_VIEW = '''
    CREATE VIEW connections AS
        SELECT c.timestamp, c.remote, r.reverse
          FROM connlog AS c
          LEFT JOIN rlookup AS r ON c.remote = r.ip
'''

CURRENT_SCHEMA = (
    [HISTORY_TABLE] + HISTORY_INDEXES +
    [ADMIN_TABLE, CONNLOG_TABLE, RLOOKUP_TABLE, CONNECTIONS_VIEW]
)

# Version 2 dropped the port column from connlog and added the reverse
# lookup cache.
MIGRATE_1_TO_2 = [
    CONNLOG_TABLE.replace('CREATE TABLE connlog', 'CREATE TABLE connlog_new'),
    'INSERT INTO connlog_new (timestamp, remote) SELECT timestamp, remote FROM connlog',
    'DROP TABLE connlog',
    'ALTER TABLE connlog_new RENAME TO connlog',
    RLOOKUP_TABLE,
    CONNECTIONS_VIEW,
]

# Version 3 gave history an explicit id column. Old rowids are carried over
# so row ids users have already seen keep pointing at the same commands.
MIGRATE_2_TO_3 = [
    HISTORY_TABLE.replace('CREATE TABLE history', 'CREATE TABLE history_new'),
    '''INSERT INTO history_new (id, user, host, command, timestamp)
           SELECT rowid, user, host, command, timestamp FROM history ORDER BY rowid''',
    'DROP TABLE history',
    'ALTER TABLE history_new RENAME TO history',
] + HISTORY_INDEXES

# Ordered: (version the step upgrades from, statements)
MIGRATIONS = [
    ("1", MIGRATE_1_TO_2),
    ("2", MIGRATE_2_TO_3),
]


def safe_makedirs(path):
    """Create path and its parents, raising StoreError if that fails"""
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create directory {path}: {e}")
        raise StoreError(f"Could not create directory {path}: {e}") from e


def connect_db(db_file):
    """Connect to a SQLite database in autocommit mode, raising StoreError on failure"""
    try:
        return sqlite3.connect(db_file, timeout=BUSY_TIMEOUT, isolation_level=None)
    except sqlite3.Error as e:
        logger.error(f"Could not connect to database {db_file}: {e}")
        raise StoreError(f"Could not connect to database {db_file}: {e}") from e


@contextmanager
def transaction(conn):
    """Run the block inside BEGIN/COMMIT, rolling back on any exception"""
    conn.execute('BEGIN')
    try:
        yield conn
        # A failed COMMIT (SQLITE_BUSY) leaves the transaction open
        conn.execute('COMMIT')
    except BaseException:
        # SQLite rolls back by itself on some errors
        if conn.in_transaction:
            conn.execute('ROLLBACK')
        raise


def init_schema(conn):
    """Create the current layout in an empty database"""
    try:
        with transaction(conn):
            for statement in CURRENT_SCHEMA:
                conn.execute(statement)
            conn.execute('INSERT INTO admin (key, value) VALUES (?, ?)', ('version', SCHEMA_VERSION))
    except sqlite3.Error as e:
        raise StoreError(f"Database initialization failed: {e}") from e
    logger.info(f"Created database schema version {SCHEMA_VERSION}")


def read_version(conn):
    """Return the schema version recorded in the admin table"""
    try:
        row = conn.execute("SELECT value FROM admin WHERE key = 'version'").fetchone()
    except sqlite3.Error as e:
        raise StoreError(f"Could not read database version: {e}") from e
    if row is None:
        raise StoreError("Database has no version entry")
    return row[0]


def _version_number(version):
    try:
        return int(version)
    except (TypeError, ValueError):
        raise StoreError(f"Unrecognized database version {version!r}")


def migrate(conn):
    """
    Bring an existing database up to SCHEMA_VERSION.

    All pending steps and the version bump run in one transaction, so a
    failure leaves the database exactly as it was. Returns True if anything
    was migrated.
    """
    version = read_version(conn)
    if version == SCHEMA_VERSION:
        logger.debug("Database on latest version.")
        return False

    current = _version_number(version)
    target = _version_number(SCHEMA_VERSION)
    if current > target:
        raise IncompatibleVersionError(
            f"Database version {version} is newer than supported version {SCHEMA_VERSION}")

    pending = [statements for start, statements in MIGRATIONS if int(start) >= current]
    try:
        with transaction(conn):
            for statements in pending:
                for statement in statements:
                    conn.execute(statement)
            conn.execute("UPDATE admin SET value = ? WHERE key = 'version'", (SCHEMA_VERSION,))
    except sqlite3.Error as e:
        logger.error(f"Migration from version {version} failed: {e}")
        raise StoreError(f"Migration from version {version} failed: {e}") from e

    if read_version(conn) != SCHEMA_VERSION:
        raise StoreError("Database version different than code version but couldn't fix it.")
    logger.info(f"Database upgraded from version {version} to {SCHEMA_VERSION}.")
    return True


def open_db(db_file):
    """Open (creating or migrating as needed) the history database"""
    is_new = db_file == ':memory:' or not os.path.exists(db_file)
    if is_new and db_file != ':memory:':
        logger.info("Database file not found. Creating new.")
        parent = os.path.dirname(os.path.abspath(db_file))
        safe_makedirs(parent)

    conn = connect_db(db_file)
    try:
        if is_new:
            init_schema(conn)
        else:
            migrate(conn)
    except Exception:
        conn.close()
        raise
    return conn
