#
# History records and the timestamp format shared by parser and renderer
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

from datetime import datetime, timezone

# ISO-8601 with a numeric offset, the shape bash prints with HISTTIMEFORMAT="%FT%T%z "
TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def parse_timestamp(text):
    """Parse a history timestamp; raises ValueError on malformed input"""
    return datetime.strptime(text, TIME_FORMAT)


def format_timestamp(moment):
    """Render a datetime in UTC using TIME_FORMAT"""
    return moment.astimezone(timezone.utc).strftime(TIME_FORMAT)


def from_epoch(epoch):
    return datetime.fromtimestamp(epoch, timezone.utc)


class HistoryRecord:
    def __init__(self, user, host, command, timestamp, row_id=None):
        self.user = user
        self.host = host
        self.command = command
        self.timestamp = timestamp
        self.row_id = row_id

    @property
    def epoch(self):
        return self.timestamp.timestamp()

    def as_row(self):
        """Values in the order INSERT_RECORD expects"""
        return (self.user, self.host, self.command, self.epoch)

    @classmethod
    def from_row(cls, row):
        """Build a record from an (id, user, host, command, timestamp) row"""
        row_id, user, host, command, epoch = row
        return cls(user, host, command, from_epoch(epoch), row_id)

    def to_dict(self):
        return {
            'row': self.row_id,
            'user': self.user,
            'host': self.host,
            'command': self.command,
            'timestamp': self.epoch,
            'datetime': format_timestamp(self.timestamp)
        }

    def __eq__(self, other):
        if not isinstance(other, HistoryRecord):
            return NotImplemented
        return (self.user, self.command, self.epoch) == (other.user, other.command, other.epoch)

    def __hash__(self):
        return hash((self.user, self.command, self.epoch))

    def __repr__(self):
        return f"HistoryRecord({self.user!r}, {self.host!r}, {self.command!r}, {format_timestamp(self.timestamp)!r})"
