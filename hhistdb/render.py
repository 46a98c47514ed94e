#
# Output formats for query results
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import json

from .errors import ValidationError
from .records import format_timestamp

FORMAT_COMMAND = "command"
FORMAT_COMMAND_LINE = "command_line"
FORMAT_ALL = "all"
FORMAT_TIMESTAMP = "timestamp"
FORMAT_LOG = "log"
FORMAT_EXPORT = "export"
FORMAT_JSON = "json"
FORMAT_RESTORE = "restore"
FORMAT_DEFAULT = FORMAT_COMMAND_LINE

FORMATS = (
    FORMAT_COMMAND,
    FORMAT_COMMAND_LINE,
    FORMAT_ALL,
    FORMAT_TIMESTAMP,
    FORMAT_LOG,
    FORMAT_EXPORT,
    FORMAT_JSON,
    FORMAT_RESTORE,
)


class Renderer:
    """
    Collects result rows and formats them in one of FORMATS.

    Entries are kept apart and joined once in formatted(), so separators only
    ever appear between two entries.
    """

    def __init__(self, output_format=FORMAT_DEFAULT):
        if output_format not in FORMATS:
            raise ValidationError(f"Unknown output format {output_format!r}, available: {', '.join(FORMATS)}")
        self.output_format = output_format
        self.entries = []
        self.count_width = None

    def add_row(self, row_id, user, host, command, timestamp):
        """Add a history row; timestamp is an aware datetime"""
        self.entries.append(self._format_row(row_id, user, host, command, timestamp))

    def add_record(self, record):
        self.add_row(record.row_id, record.user, record.host, record.command, record.timestamp)

    def _format_row(self, row_id, user, host, command, timestamp):
        fmt = self.output_format
        if fmt == FORMAT_COMMAND:
            return command
        if fmt == FORMAT_ALL:
            return f"{row_id:05d} | {format_timestamp(timestamp)} | {user:>10} | {host:>10} | {command}"
        if fmt == FORMAT_TIMESTAMP:
            return f"{format_timestamp(timestamp)}: {command}"
        if fmt == FORMAT_LOG:
            return f"{format_timestamp(timestamp)} {user}@{host} {command}"
        if fmt == FORMAT_EXPORT:
            return f"{user} {host} {format_timestamp(timestamp)} {command}"
        if fmt == FORMAT_JSON:
            return json.dumps({
                'row': row_id,
                'datetime': format_timestamp(timestamp),
                'user': user,
                'host': host,
                'command': command
            })
        if fmt == FORMAT_RESTORE:
            return f"#{int(timestamp.timestamp())}\n{command}"
        return f"{row_id} {command}"

    def add_count_row(self, count, command):
        """
        Add a TopK row. Counts are aligned to the width of the first one, which
        is the largest. Count rows are text and go in a FORMAT_DEFAULT renderer.
        """
        if self.count_width is None:
            self.count_width = len(str(count))
        self.entries.append(f"{count:>{self.count_width}} | {command}")

    def __len__(self):
        return len(self.entries)

    def formatted(self):
        if self.output_format == FORMAT_JSON:
            if not self.entries:
                return b"[]"
            return ("[\n" + ",\n".join(self.entries) + "\n]").encode('utf-8')
        return "\n".join(self.entries).encode('utf-8')
