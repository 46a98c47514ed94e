#
# Shell integration: timestamped history and a prompt hook feeding hhdb
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import os
import re
import time
import logging
import calendar
from datetime import datetime

logger = logging.getLogger(__name__)

BASHRC = os.path.expanduser("~/.bashrc")
BASH_HISTORY = os.path.expanduser("~/.bash_history")

BASHRC_LINES = '''export HISTTIMEFORMAT="%FT%T%z "
export PROMPT_COMMAND="${PROMPT_COMMAND:+$PROMPT_COMMAND; }(history 1 | hhdb 2>/dev/null &)"
'''

TIMESTAMP_LINE = re.compile(r'^#[0-9]+$')


def months_before(moment, months):
    """Same day and time `months` calendar months earlier, clamped to the month's length"""
    year, month = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_timestamps(history, months=12, now=None):
    """
    Give every untimestamped line of a bash history file a #EPOCH line.

    Timestamps are spread evenly from `months` months ago until now. Lines
    that already follow a timestamp are copied as they are, so running this
    again on its own output changes nothing.
    """
    now = now if now is not None else datetime.now()
    since = months_before(now, months)
    lines = history.split("\n")
    start = int(time.mktime(since.timetuple()))
    step = int((now - since).total_seconds() / max(len(lines), 1))

    out = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if TIMESTAMP_LINE.match(line):
            out.append(line)
            if i + 1 < len(lines):
                out.append(lines[i + 1])
            i += 2
            continue
        if line:
            out.append(f"#{start + i * step}")
            out.append(line)
        i += 1
    return "".join(f"{line}\n" for line in out)


def apply_setup(bashrc=None, bash_history=None, rewrite_history=True, months=12):
    """Append the hook to bashrc and optionally timestamp the existing history"""
    bashrc = bashrc or BASHRC
    bash_history = bash_history or BASH_HISTORY
    changed = []

    with open(bashrc, 'a') as f:
        f.write(BASHRC_LINES)
    logger.info(f"Updated {bashrc}")
    changed.append(bashrc)

    if rewrite_history and os.path.exists(bash_history):
        with open(bash_history, 'r', errors='replace') as f:
            converted = add_timestamps(f.read(), months)
        with open(bash_history, 'w') as f:
            f.write(converted)
        os.chmod(bash_history, 0o600)
        logger.info(f"Updated {bash_history}")
        changed.append(bash_history)

    return changed
