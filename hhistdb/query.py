#
# Query engine: search, rankings, row access and context windows
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import re
import sqlite3
import logging
from enum import Enum

from .errors import ValidationError, NotFoundError, StoreError
from .records import HistoryRecord
from .render import Renderer, FORMATS, FORMAT_DEFAULT
from .schema import transaction

logger = logging.getLogger(__name__)

# Printed between two context windows
WINDOW_SEPARATOR = b"\n------------------\n"

# Keep IN (...) lists well below SQLite's host parameter limit
FETCH_CHUNK = 500

DEMO_TOPK = 15
DEMO_LASTK = 10


class QueryType(Enum):
    SEARCH = "query"
    TOPK = "topk"
    LASTK = "lastk"
    USERS = "users"
    ROW = "row"
    DELETE = "delete"
    CONTEXT = "context"
    DEMO = "demo"


# Query types that evaluate the command pattern as a regular expression
REGEX_QUERIES = (QueryType.SEARCH, QueryType.CONTEXT)


def coerce_query_type(value):
    if isinstance(value, QueryType):
        return value
    try:
        return QueryType(value)
    except ValueError:
        raise ValidationError(f"Unknown query type {value!r}")


def escape_like(text):
    """Escape LIKE wildcards so text matches literally"""
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class QueryParams:
    """
    Parameters of a single query.

    user, host and command are SQL LIKE patterns ('%' matches any run of
    characters, '_' a single one, '\\' escapes). With regex set, command is a
    regular expression evaluated in Python against the command text of the
    rows the user/host patterns select. Not every field is used by every
    query type.
    """

    FIELDS = ('query_type', 'user', 'host', 'command', 'regex', 'unique',
              'kappa', 'rows', 'before', 'after', 'output_format')

    def __init__(self, query_type=QueryType.SEARCH, user="%", host="%", command="%",
                 regex=False, unique=False, kappa=20, rows=(), before=0, after=0,
                 output_format=FORMAT_DEFAULT):
        self.query_type = coerce_query_type(query_type)
        self.user = user
        self.host = host
        self.command = command
        self.regex = regex
        self.unique = unique
        self.kappa = kappa
        self.rows = list(rows or ())
        self.before = before
        self.after = after
        self.output_format = output_format
        self.validate()

    def validate(self):
        """Raise ValidationError for anything the engine could not run"""
        self.query_type = coerce_query_type(self.query_type)
        for name in ('user', 'host', 'command'):
            if not isinstance(getattr(self, name), str):
                raise ValidationError(f"{name} must be a string")
        for name in ('regex', 'unique'):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be true or false, got {getattr(self, name)!r}")
        for name in ('kappa', 'before', 'after'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")
        if self.query_type in (QueryType.TOPK, QueryType.LASTK) and self.kappa < 1:
            raise ValidationError(f"{self.query_type.value} needs a positive k")
        if self.query_type == QueryType.DELETE:
            if not self.rows:
                raise ValidationError("delete needs at least one row id")
            for row in self.rows:
                if not isinstance(row, int) or isinstance(row, bool):
                    raise ValidationError(f"Invalid row id {row!r}")
        if self.output_format not in FORMATS:
            raise ValidationError(f"Unknown output format {self.output_format!r}, available: {', '.join(FORMATS)}")
        if self.regex:
            if self.query_type not in REGEX_QUERIES:
                raise ValidationError(
                    f"Regular expressions are only supported by search and context queries, not {self.query_type.value}")
            self.pattern()

    def pattern(self):
        try:
            return re.compile(self.command)
        except re.error as e:
            raise ValidationError(f"Invalid regular expression {self.command!r}: {e}") from e

    def copy(self, **changes):
        values = self.to_dict()
        values.update(changes)
        return QueryParams.from_dict(values)

    def to_dict(self):
        values = {name: getattr(self, name) for name in self.FIELDS}
        values['query_type'] = self.query_type.value
        values['rows'] = list(self.rows)
        return values

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValidationError("Query parameters must be a mapping")
        unknown = set(data) - set(cls.FIELDS)
        if unknown:
            raise ValidationError(f"Unknown query parameters: {', '.join(sorted(unknown))}")
        return cls(**data)

    def __repr__(self):
        return f"QueryParams({self.to_dict()!r})"


def merge_windows(windows):
    """
    Merge context windows that overlap.

    Windows are lists of row ids in chronological order, one per match, in
    match order. Walking backwards, when window i contains the first id of
    window i+1 the two are joined at that id, so chains of overlapping
    windows collapse in a single pass.
    """
    merged = [list(window) for window in windows if window]
    for i in range(len(merged) - 2, -1, -1):
        head = merged[i + 1][0]
        if head in merged[i]:
            position = merged[i].index(head)
            merged[i] = merged[i][:position] + merged[i + 1]
            del merged[i + 1]
    return merged


class QueryEngine:
    def __init__(self, conn):
        self.conn = conn
        self.handlers = {
            QueryType.SEARCH: self.search,
            QueryType.TOPK: self.topk,
            QueryType.LASTK: self.lastk,
            QueryType.USERS: self.users,
            QueryType.ROW: self.row,
            QueryType.DELETE: self.delete,
            QueryType.CONTEXT: self.context,
            QueryType.DEMO: self.demo,
        }

    def run(self, params):
        """Validate params and run the query they describe, returning bytes"""
        params.validate()
        handler = self.handlers.get(params.query_type)
        if handler is None:
            raise ValidationError(f"Unknown query type {params.query_type!r}")
        logger.debug(f"Running {params!r}")
        try:
            return handler(params)
        except sqlite3.Error as e:
            logger.error(f"Query {params.query_type.value} failed: {e}")
            raise StoreError(f"Query failed: {e}") from e

    def _filter(self, params, with_command=True):
        clauses = ["user LIKE ? ESCAPE '\\'", "host LIKE ? ESCAPE '\\'"]
        args = [params.user, params.host]
        if with_command and not params.regex:
            clauses.append("command LIKE ? ESCAPE '\\'")
            args.append(params.command)
        return " AND ".join(clauses), args

    def matching_records(self, params):
        """
        Records matching the user/host/command filters, oldest first.

        Regular expressions are applied here rather than in SQLite, which has
        no built-in REGEXP.
        """
        where, args = self._filter(params)
        cursor = self.conn.execute(
            f'''SELECT id, user, host, command, timestamp FROM history
                WHERE {where} ORDER BY timestamp, id''', args)
        pattern = params.pattern() if params.regex else None
        for row in cursor:
            if pattern is not None and not pattern.search(row[3]):
                continue
            yield HistoryRecord.from_row(row)

    def search(self, params):
        """Matching rows; with unique, the earliest row of each command"""
        renderer = Renderer(params.output_format)
        seen = set()
        for record in self.matching_records(params):
            if params.unique:
                if record.command in seen:
                    continue
                seen.add(record.command)
            renderer.add_record(record)
        return renderer.formatted()

    def top_commands(self, params):
        """(command, count) pairs, most frequent first"""
        where, args = self._filter(params)
        return self.conn.execute(
            f'''SELECT command, COUNT(*) AS count FROM history
                WHERE {where}
                GROUP BY command ORDER BY count DESC, command ASC LIMIT ?''',
            args + [params.kappa]).fetchall()

    def topk(self, params):
        """Count rows; output_format does not apply to rankings"""
        renderer = Renderer(FORMAT_DEFAULT)
        for command, count in self.top_commands(params):
            renderer.add_count_row(count, command)
        return renderer.formatted()

    def last_records(self, params):
        """The kappa most recent matching records, oldest first"""
        where, args = self._filter(params)
        if params.unique:
            # SQLite fills bare columns from the row holding MAX(timestamp)
            inner = f'''SELECT id, user, host, command, MAX(timestamp) AS timestamp FROM history
                        WHERE {where} GROUP BY command
                        ORDER BY timestamp DESC, id DESC LIMIT ?'''
        else:
            inner = f'''SELECT id, user, host, command, timestamp FROM history
                        WHERE {where}
                        ORDER BY timestamp DESC, id DESC LIMIT ?'''
        rows = self.conn.execute(
            f'SELECT * FROM ({inner}) ORDER BY timestamp ASC, id ASC', args + [params.kappa])
        return [HistoryRecord.from_row(row) for row in rows]

    def lastk(self, params):
        renderer = Renderer(params.output_format)
        for record in self.last_records(params):
            renderer.add_record(record)
        return renderer.formatted()

    def users(self, params):
        where, args = self._filter(params)
        rows = self.conn.execute(
            f'SELECT DISTINCT user, host FROM history WHERE {where} ORDER BY user, host', args)
        lines = ["Unique user-hosts pairs:"]
        lines.extend(f"{user}@{host}" for user, host in rows)
        return "\n".join(lines).encode('utf-8')

    def row(self, params):
        """The bare command of row kappa, suitable for piping to a shell"""
        found = self.conn.execute('SELECT command FROM history WHERE id = ?', (params.kappa,)).fetchone()
        if found is None:
            raise NotFoundError(f"No history row with id {params.kappa}")
        return found[0].encode('utf-8')

    def delete(self, params):
        """Delete rows by id in one transaction. Ids that don't exist are ignored."""
        ids = sorted(set(params.rows), reverse=True)
        before = self.conn.total_changes
        with transaction(self.conn):
            self.conn.executemany('DELETE FROM history WHERE id = ?', [(row_id,) for row_id in ids])
        deleted = self.conn.total_changes - before
        logger.info(f"Deleted {deleted} of {len(ids)} requested rows")
        return f"No errors during deletion. Deleted {deleted} of {len(ids)} rows.".encode('utf-8')

    def demo(self, params):
        def scalar(sql):
            return self.conn.execute(sql).fetchone()[0]

        lines = scalar('SELECT COUNT(*) FROM history')
        unique = scalar('SELECT COUNT(DISTINCT command) FROM history')
        users = scalar('SELECT COUNT(DISTINCT user) FROM history')
        hosts = scalar('SELECT COUNT(DISTINCT host) FROM history')

        top = self.topk(params.copy(query_type=QueryType.TOPK.value, kappa=DEMO_TOPK))
        last = self.lastk(params.copy(query_type=QueryType.LASTK.value, kappa=DEMO_LASTK))

        who = f"{params.user}@{params.host}"
        out = (
            f"There are {lines} command lines ({unique} unique) in your database "
            f"from {users} users across {hosts} hosts.\n\n"
            f"Top-{DEMO_TOPK} commands for user {who}:\n"
        ).encode('utf-8')
        out += top
        out += f"\n\nLast {DEMO_LASTK} commands user {who} ran:\n".encode('utf-8')
        out += last
        return out

    def window(self, params, record):
        """
        Row ids around a match: up to `before` earlier rows, the match itself
        and up to `after` later rows within the user/host scope.

        Rows are ordered by (timestamp, id) so rows sharing a timestamp still
        have a fixed place around the match.
        """
        where, args = self._filter(params, with_command=False)
        key = [record.epoch, record.epoch, record.row_id]
        rows = self.conn.execute(
            f'''SELECT id FROM (
                    SELECT id, timestamp FROM history
                    WHERE (timestamp < ? OR (timestamp = ? AND id <= ?)) AND {where}
                    ORDER BY timestamp DESC, id DESC LIMIT ?)
                ORDER BY timestamp ASC, id ASC''',
            key + args + [params.before + 1])
        ids = [row_id for (row_id,) in rows]
        if params.after > 0:
            rows = self.conn.execute(
                f'''SELECT id FROM history
                    WHERE (timestamp > ? OR (timestamp = ? AND id > ?)) AND {where}
                    ORDER BY timestamp ASC, id ASC LIMIT ?''',
                key + args + [params.after])
            ids.extend(row_id for (row_id,) in rows)
        return ids

    def fetch_records(self, ids):
        """Records for the given ids, oldest first"""
        records = []
        ids = list(ids)
        for start in range(0, len(ids), FETCH_CHUNK):
            chunk = ids[start:start + FETCH_CHUNK]
            marks = ", ".join("?" * len(chunk))
            rows = self.conn.execute(
                f'SELECT id, user, host, command, timestamp FROM history WHERE id IN ({marks})', chunk)
            records.extend(HistoryRecord.from_row(row) for row in rows)
        records.sort(key=lambda record: (record.epoch, record.row_id))
        return records

    def context(self, params):
        """
        grep -B/-A for history: every match plus its surrounding rows,
        overlapping windows merged into one block.
        """
        matches = sorted(self.matching_records(params), key=lambda record: (record.epoch, record.row_id))
        windows = merge_windows(self.window(params, record) for record in matches)
        logger.debug(f"Context query: {len(matches)} matches in {len(windows)} windows")

        blocks = []
        for window in windows:
            renderer = Renderer(params.output_format)
            for record in self.fetch_records(window):
                renderer.add_record(record)
            blocks.append(renderer.formatted())
        return WINDOW_SEPARATOR.join(blocks)
