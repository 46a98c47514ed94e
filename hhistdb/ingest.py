#
# Import of shell history lines into the history table
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import re
import sqlite3
import logging

from .errors import ParseError, StoreError
from .records import HistoryRecord, parse_timestamp
from .schema import transaction

logger = logging.getLogger(__name__)

# Date shape only; out of range values are caught by the parser
TIMESTAMP = r'[0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}[+-][0-9]{2}:?[0-9]{2}'

# `history` output with HISTTIMEFORMAT="%FT%T%z ":
#     [LINENUM[*]] DATETIME COMMAND
HISTORY_LINE = re.compile(r'^ *(?:[0-9]+\*?)? *(' + TIMESTAMP + r') *(.*)$')

# Our own export format, keeps the original user and host:
#     USER HOST DATETIME COMMAND
EXPORT_LINE = re.compile(
    r'^([a-zA-Z_][a-zA-Z0-9_.-]*) ([a-zA-Z0-9][a-zA-Z0-9_.-]*) +(' + TIMESTAMP + r') *(.*)$')

INSERT_RECORD = 'INSERT INTO history (user, host, command, timestamp) VALUES (?, ?, ?, ?)'

DUPLICATE_ERRORS = ('SQLITE_CONSTRAINT_UNIQUE', 'SQLITE_CONSTRAINT_PRIMARYKEY')


class BatchStats:
    def __init__(self):
        self.total = 0
        self.succeeded = 0
        self.failed = 0
        self.duplicates = 0

    def summary(self):
        return f"Processed {self.total} entries, successful {self.succeeded}, failed {self.failed}."

    def __repr__(self):
        return f"BatchStats(total={self.total}, succeeded={self.succeeded}, failed={self.failed})"


def is_duplicate(error):
    """Whether an IntegrityError comes from the (user, command, timestamp) key"""
    name = getattr(error, 'sqlite_errorname', None)
    if name is not None:
        return name in DUPLICATE_ERRORS
    message = str(error)
    return 'UNIQUE constraint failed' in message or 'PRIMARY KEY' in message


def _clean(line):
    if isinstance(line, bytes):
        line = line.decode('utf-8', errors='replace')
    return line.rstrip('\n').rstrip('\r')


def parse_line(line, default_user, default_host):
    """
    Turn one history line into a HistoryRecord.

    Returns None when the line matches neither shape. Raises ParseError when a
    shape matched but the timestamp is not a valid date, since that means the
    input is corrupted rather than just noisy.
    """
    match = HISTORY_LINE.match(line)
    if match:
        user, host = default_user, default_host
        stamp, command = match.groups()
    else:
        match = EXPORT_LINE.match(line)
        if not match:
            return None
        user, host, stamp, command = match.groups()

    try:
        timestamp = parse_timestamp(stamp)
    except ValueError as e:
        raise ParseError(f"Invalid timestamp {stamp!r}: {e}") from e
    return HistoryRecord(user, host, command, timestamp)


def add_batch(conn, lines, default_user, default_host):
    """
    Parse and insert a batch of history lines in a single transaction.

    Unrecognized lines and duplicates are counted as failed and skipped. A
    malformed timestamp or any other database error rolls the whole batch
    back and is raised.
    """
    stats = BatchStats()
    try:
        with transaction(conn):
            for lineno, raw in enumerate(lines, 1):
                line = _clean(raw)
                if not line.strip():
                    continue
                stats.total += 1

                try:
                    record = parse_line(line, default_user, default_host)
                except ParseError as e:
                    logger.error(f"Aborting import, line {lineno}: {e}")
                    raise ParseError(f"Line {lineno}: {e}") from e
                if record is None:
                    logger.info(f"Couldn't decode line {lineno}, unknown format. Skipping: {line}")
                    stats.failed += 1
                    continue

                try:
                    conn.execute(INSERT_RECORD, record.as_row())
                except sqlite3.IntegrityError as e:
                    if not is_duplicate(e):
                        raise
                    logger.debug(f"Duplicate entry. Ignoring. {record!r}")
                    stats.failed += 1
                    stats.duplicates += 1
                    continue
                stats.succeeded += 1
    except sqlite3.Error as e:
        logger.error(f"Import failed, batch rolled back: {e}")
        raise StoreError(f"Import failed: {e}") from e

    logger.info(stats.summary())
    return stats


def add_record(conn, record):
    """Insert a single record; returns False if it was already stored"""
    try:
        with transaction(conn):
            conn.execute(INSERT_RECORD, record.as_row())
    except sqlite3.IntegrityError as e:
        if not is_duplicate(e):
            raise StoreError(f"Could not add history entry: {e}") from e
        logger.debug(f"Duplicate entry. Ignoring. {record!r}")
        return False
    except sqlite3.Error as e:
        raise StoreError(f"Could not add history entry: {e}") from e
    return True
