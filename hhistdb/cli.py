#
# hhdb - store shell history in SQLite and search it
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import re
import sys
import logging
import argparse

from . import __version__
from .config import Config, setup_logging
from .errors import HistDBError, ValidationError
from .query import QueryParams, QueryType
from .render import FORMATS, FORMAT_DEFAULT
from .shellsetup import apply_setup
from .store import open_store

logger = logging.getLogger(__name__)

OP_IMPORT = "import"
OP_QUERY = "query"
OP_INTERACTIVE = "interactive"
OP_CONNECTIONS = "connections"

SINGLE = re.compile(r'^[0-9]+$')
SPAN = re.compile(r'^([0-9]+)-([0-9]+)$')

DESCRIPTION = '''Store shell history in a SQLite database and query it.

  hhdb [options] [QUERY ...]        search, rank or show history
  history | hhdb [options]          import history from stdin

QUERY terms are joined with spaces and matched anywhere in the command line,
like grep. SQL wildcards apply: percent (%) for any run of characters,
underscore (_) for a single character, backslash to escape. -U and -H take the
same wildcards but match the whole user or host name.'''


def parse_range(expression):
    """
    Parse row ids like '12,34-56,1023,80' into a sorted list without
    duplicates. Reversed spans such as '9-5' are accepted.
    """
    rows = set()
    for part in expression.split(','):
        if SINGLE.match(part):
            rows.add(int(part))
            continue
        span = SPAN.match(part)
        if not span:
            raise ValidationError(f"bad number: {part!r}")
        low, high = sorted((int(span.group(1)), int(span.group(2))))
        rows.update(range(low, high + 1))
    return sorted(rows)


def build_parser():
    parser = argparse.ArgumentParser(
        prog='hhdb', description=DESCRIPTION, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('query', nargs='*', help='Search terms for the command line')
    parser.add_argument('--db', '-d', metavar='FILE', help='Database file, created if missing')
    parser.add_argument('--config', metavar='FILE', help='Configuration file (default: ~/.hhistdb.conf)')
    parser.add_argument('--verbose', '-v', action='count', default=None,
                        help='Log info (-v) or debug (-vv) messages')
    parser.add_argument('--user', '-U', metavar='USER', help='User to record, or user pattern to search')
    parser.add_argument('--host', '-H', metavar='HOST', help='Host to record, or host pattern to search')
    parser.add_argument('--global', '-g', dest='global_search', action='store_true',
                        help="Search all users and hosts (same as -U %% -H %%)")
    parser.add_argument('--unique', '-u', action='store_true', help='Return each command line only once')
    parser.add_argument('--regex', '-e', action='store_true',
                        help='Treat QUERY as a regular expression (search and context only)')
    parser.add_argument('--format', '-f', choices=FORMATS, default=FORMAT_DEFAULT,
                        help=f"Output format (default: {FORMAT_DEFAULT}); 'export' can be imported "
                             "again, 'restore' rebuilds a bash history file")
    parser.add_argument('--topk', type=int, metavar='K', help='K most used command lines')
    parser.add_argument('--lastk', '--tail', type=int, metavar='K', help='K most recent command lines')
    parser.add_argument('--row', type=int, metavar='ID', help='Print the command of a single row')
    parser.add_argument('--del', dest='delete', metavar='RANGE', help='Delete rows, e.g. 9-13,100,5')
    parser.add_argument('--users', action='store_true', help='List user@host pairs in the database')
    parser.add_argument('--after', '-A', type=int, metavar='N', help='Show N commands after each match')
    parser.add_argument('--before', '-B', type=int, metavar='N', help='Show N commands before each match')
    parser.add_argument('--context', '-C', type=int, metavar='N',
                        help='Show N commands before and after each match')
    parser.add_argument('--connections', type=int, nargs='?', const=20, metavar='N',
                        help='Show the N most recent client connections')
    parser.add_argument('--interactive', '-i', action='store_true', help='Interactive search with completion')
    parser.add_argument('--save', action='store_true', help='Write database and user settings to the config file')
    parser.add_argument('--init', action='store_true',
                        help='Add the history hook to ~/.bashrc and timestamp ~/.bash_history')
    parser.add_argument('--version', '-V', action='version', version=f"%(prog)s {__version__}")
    return parser


def resolve_config(args):
    """Configuration file and environment, overridden by flags"""
    config = Config.load(config_file=args.config)
    if args.db:
        config.database = args.db
    if args.user is not None:
        config.user = args.user
    if args.host is not None:
        config.host = args.host
    if args.verbose is not None:
        config.verbosity = args.verbose
    return config


def build_operation(args, config, piped):
    """Decide what to do and with which query parameters"""
    if args.connections is not None:
        return OP_CONNECTIONS, None

    user, host = config.user, config.host
    if args.global_search:
        user = host = "%"

    terms = " ".join(args.query)
    command = terms if args.regex else f"%{terms}%"

    before = args.before if args.before is not None else (args.context or 0)
    after = args.after if args.after is not None else (args.context or 0)

    common = dict(user=user, host=host, command=command, regex=args.regex, unique=args.unique,
                  output_format=args.format)

    if args.interactive:
        return OP_INTERACTIVE, QueryParams(QueryType.SEARCH, **common)
    if args.topk is not None:
        return OP_QUERY, QueryParams(QueryType.TOPK, kappa=args.topk, **common)
    if args.lastk is not None:
        return OP_QUERY, QueryParams(QueryType.LASTK, kappa=args.lastk, **common)
    if args.row is not None:
        return OP_QUERY, QueryParams(QueryType.ROW, kappa=args.row, **common)
    if args.delete:
        return OP_QUERY, QueryParams(QueryType.DELETE, rows=parse_range(args.delete), **common)
    if args.users:
        # Listing users searches everyone unless told otherwise
        if args.user is None:
            common['user'] = "%"
        if args.host is None:
            common['host'] = "%"
        return OP_QUERY, QueryParams(QueryType.USERS, **common)
    if args.query:
        if before or after:
            return OP_QUERY, QueryParams(QueryType.CONTEXT, before=before, after=after, **common)
        return OP_QUERY, QueryParams(QueryType.SEARCH, **common)
    if piped:
        return OP_IMPORT, None
    return OP_QUERY, QueryParams(QueryType.DEMO, **common)


def is_piped(stream):
    try:
        return not stream.isatty()
    except (AttributeError, ValueError):
        return False


def main(argv=None, stdin=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    stdin = stdin if stdin is not None else sys.stdin

    try:
        config = resolve_config(args)
    except HistDBError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    setup_logging(config)
    logger.info(f"Welcome {config.user}@{config.host}, using {config.database}")

    try:
        if args.save:
            print(f"Wrote settings to {config.save()}")
        if args.init:
            for path in apply_setup():
                print(f"Updated {path}")
            return 0
        operation, params = build_operation(args, config, is_piped(stdin))
    except ValidationError as e:
        logger.error(f"Invalid arguments: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except (HistDBError, OSError) as e:
        logger.error(f"Setup failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if params is not None:
        logger.info(f"Query parameters: user {params.user}, host {params.host}, command {params.command}")

    try:
        with open_store(config) as store:
            if operation == OP_IMPORT:
                # Runs on every prompt, so the summary only goes to the log
                store.ingest(stdin, config.user, config.host)
            elif operation == OP_CONNECTIONS:
                for moment, remote, reverse in store.connections(args.connections):
                    print(f"{moment.isoformat()} {remote} {reverse or '-'}")
            elif operation == OP_INTERACTIVE:
                from .interactive import run_interactive
                run_interactive(store, params)
            else:
                print(store.query(params).decode('utf-8'))
    except ValidationError as e:
        logger.error(f"Invalid query: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except HistDBError as e:
        logger.error(f"{operation} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
