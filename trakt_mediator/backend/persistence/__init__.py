"""SQLite-backed persistence helpers for the Trakt mediator."""

from .sqlite import (
    Database,
    connect,
    get_history_row,
    get_last_fetched_at,
    get_token_pair,
    insert_genres,
    insert_history,
    list_genres,
    list_history,
    list_history_ids,
    migrate,
    save_token_pair,
    update_history,
    update_last_fetched_at,
)

__all__ = [
    "Database",
    "connect",
    "get_history_row",
    "get_last_fetched_at",
    "get_token_pair",
    "insert_genres",
    "insert_history",
    "list_genres",
    "list_history",
    "list_history_ids",
    "migrate",
    "save_token_pair",
    "update_history",
    "update_last_fetched_at",
]
