"""SQLite storage layer for wa-history.

One file holds every logged-in account's messages (rows carry account_id).
The store owns:
- schema creation (existence-checked, safe across restarts)
- idempotent ingestion of messages, conversations and group participants
- filtered queries, conversation-grouped export and aggregate stats
"""

from .db import (  # noqa: F401
    ExportFilter,
    ExportedConversation,
    ExportedMessage,
    HistoryStats,
    HistoryStore,
    HistoryStoreError,
    IncomingMessage,
    InvalidFilter,
    NotInitialized,
    StorageFailure,
    StoredMessage,
    ensure_schema,
    parse_iso_ms,
)
