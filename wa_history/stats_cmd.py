from __future__ import annotations

import json
import sys
from datetime import datetime, timezone

from .storage.db import HistoryStore, HistoryStoreError


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def run(args) -> int:
    """Print aggregate statistics for the history database."""
    store = HistoryStore(getattr(args, "db_path", None))
    try:
        store.initialize()
        stats = store.get_stats()
    except (HistoryStoreError, OSError) as e:
        print(f"Stats failed: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    if getattr(args, "json", False):
        print(
            json.dumps(
                {
                    "totalMessages": stats.total_messages,
                    "totalConversations": stats.total_conversations,
                    "oldestMessage": stats.oldest_message,
                    "newestMessage": stats.newest_message,
                }
            )
        )
        return 0

    print(f"Database: {store.db_path}")
    print(f"Messages: {stats.total_messages}")
    print(f"Conversations: {stats.total_conversations}")
    print(f"Oldest: {_fmt_ms(stats.oldest_message)}")
    print(f"Newest: {_fmt_ms(stats.newest_message)}")
    return 0
