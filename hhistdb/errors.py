#
# Error types raised by the history store
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#


class HistDBError(Exception):
    """Base class for all hhistdb errors"""


class ValidationError(HistDBError):
    """Query parameters or a request were rejected before touching storage"""


class ParseError(HistDBError):
    """A history line matched a known shape but its timestamp is malformed"""


class NotFoundError(HistDBError):
    """A row addressed by id does not exist"""


class StoreError(HistDBError):
    """The database could not be opened, migrated or written"""


class IncompatibleVersionError(StoreError):
    """The database schema is newer than this code understands"""


class ConfigError(HistDBError):
    """The configuration file could not be read"""
