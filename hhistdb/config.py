#
# Settings for hhistdb: defaults, environment, configuration file
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import json
import socket
import getpass
import logging

from .errors import ConfigError
from .lookup import DEFAULT_WORKERS

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = os.path.expanduser("~/.hhistdb.sqlite3")
CONFIG_FILE = os.path.expanduser("~/.hhistdb.conf")
LOG_FILE = os.path.expanduser("~/.hhistdb.log")

ENV_DATABASE = "HHISTDB_DB"
ENV_CONFIG = "HHISTDB_CONFIG"
ENV_LOG = "HHISTDB_LOG"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]

# Keys read from and written to the configuration file
FILE_KEYS = ('database', 'log_file', 'user', 'host')


def detect_user(environ=None):
    """Current user name from $USER, falling back to the password database"""
    environ = os.environ if environ is None else environ
    user = environ.get('USER')
    if user:
        return user
    try:
        return getpass.getuser()
    except (KeyError, OSError) as e:
        logger.warning(f"Could not determine user name: {e}")
        return ""


def detect_host():
    try:
        return socket.gethostname()
    except OSError as e:
        logger.warning(f"Could not determine hostname: {e}")
        return ""


class Config:
    """
    Settings resolved once at startup and handed to the components that need
    them. Precedence, lowest first: built-in defaults, environment,
    configuration file, command line flags (applied by the CLI).
    """

    def __init__(self, database=DEFAULT_DATABASE, user=None, host=None, log_file=LOG_FILE,
                 verbosity=0, lookup_workers=DEFAULT_WORKERS, config_file=None):
        self.database = database
        self.user = user if user is not None else detect_user()
        self.host = host if host is not None else detect_host()
        self.log_file = log_file
        self.verbosity = verbosity
        self.lookup_workers = lookup_workers
        self.config_file = config_file or CONFIG_FILE

    @classmethod
    def load(cls, config_file=None, environ=None):
        environ = os.environ if environ is None else environ
        config_file = config_file or environ.get(ENV_CONFIG) or CONFIG_FILE

        config = cls(
            database=environ.get(ENV_DATABASE) or DEFAULT_DATABASE,
            user=detect_user(environ),
            host=detect_host(),
            log_file=environ.get(ENV_LOG) or LOG_FILE,
            config_file=config_file,
        )
        config.read_file()
        return config

    def read_file(self):
        """Apply the configuration file, if there is one. Returns True if it was read."""
        if not os.path.exists(self.config_file):
            return False
        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not parse configuration file {self.config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {self.config_file} must hold a JSON object")

        for key in FILE_KEYS:
            value = data.get(key)
            if value:
                setattr(self, key, os.path.expanduser(value) if key in ('database', 'log_file') else value)
        return True

    def save(self):
        """Write the file settings, readable by the owner only"""
        data = {key: getattr(self, key) for key in FILE_KEYS}
        try:
            fd = os.open(self.config_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            raise ConfigError(f"Could not write configuration file {self.config_file}: {e}") from e
        logger.info(f"Wrote settings to {self.config_file}")
        return self.config_file

    def to_dict(self):
        return {
            'database': self.database,
            'user': self.user,
            'host': self.host,
            'log_file': self.log_file,
            'verbosity': self.verbosity,
            'lookup_workers': self.lookup_workers,
            'config_file': self.config_file
        }


def setup_logging(config):
    """Log to the configured file; verbosity 0, 1, 2 means warning, info, debug"""
    level = LOG_LEVELS[max(0, min(config.verbosity, len(LOG_LEVELS) - 1))]
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        filename=config.log_file,
        filemode='a'
    )
    logging.getLogger().setLevel(level)
