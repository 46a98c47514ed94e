#
# Interactive history search with completion from the store
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import sqlite3
import logging

from prompt_toolkit.shortcuts import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import InMemoryHistory

from .errors import HistDBError
from .query import QueryParams, QueryType, escape_like

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
HISTORY_PRELOAD = 200
QUIT_WORDS = ('exit', 'quit')


class HistoryCompleter(Completer):
    """Suggests the most used stored commands containing the text typed so far"""

    def __init__(self, store, user="%", host="%", limit=MAX_SUGGESTIONS):
        self.store = store
        self.user = user
        self.host = host
        self.limit = limit

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        if not text.strip():
            return
        params = QueryParams(QueryType.TOPK, user=self.user, host=self.host,
                             command=f"%{escape_like(text)}%", kappa=self.limit)
        try:
            suggestions = self.store.engine.top_commands(params)
        except (HistDBError, sqlite3.Error) as e:
            logger.error(f"Completion lookup failed: {e}")
            return
        for command, count in suggestions:
            display = command[:60] + "..." if len(command) > 60 else command
            yield Completion(command, start_position=-len(text), display=display,
                             display_meta=f"{count}x")


def load_history(store, user="%", host="%", limit=HISTORY_PRELOAD):
    """Recent distinct commands, oldest first, for up-arrow recall"""
    history = InMemoryHistory()
    params = QueryParams(QueryType.LASTK, user=user, host=host, unique=True, kappa=limit)
    for record in store.engine.last_records(params):
        history.append_string(record.command)
    return history


def search_once(store, text, params):
    """Run one interactive search line; the text is matched literally"""
    query = params.copy(query_type=QueryType.SEARCH.value,
                        command=text if params.regex else f"%{escape_like(text)}%")
    return store.query(query).decode('utf-8')


def run_interactive(store, params):
    """Read search terms until EOF, printing the matching history for each"""
    session = PromptSession(
        history=load_history(store, params.user, params.host),
        completer=HistoryCompleter(store, params.user, params.host),
        complete_while_typing=True
    )
    print("hhdb interactive search. Type part of a command, Tab to complete, Ctrl-D to quit.")
    while True:
        try:
            text = session.prompt(f"[{params.user}@{params.host}] search> ")
        except KeyboardInterrupt:
            continue
        except EOFError:
            break

        text = text.strip()
        if not text:
            continue
        if text in QUIT_WORDS:
            break
        try:
            result = search_once(store, text, params)
        except HistDBError as e:
            print(f"Error: {e}")
            continue
        print(result if result else "No entries found.")
