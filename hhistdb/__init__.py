#
# hhistdb - shell history in a SQLite database
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

__version__ = "0.3.0"

from .errors import (
    HistDBError,
    ValidationError,
    ParseError,
    NotFoundError,
    StoreError,
    IncompatibleVersionError,
    ConfigError,
)
from .records import HistoryRecord
from .render import Renderer
from .query import QueryParams, QueryType, merge_windows
from .store import Store, open_store
from .config import Config
from .dispatch import Request, handle_request
