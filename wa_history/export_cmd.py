"""`wa-history export` - dump stored history as JSON, CSV or JSONL.

JSON is grouped by conversation; CSV and JSONL are flat, one message per
row/line, oldest first.
"""

from __future__ import annotations

import csv
import io
import json
import sys
from dataclasses import asdict
from pathlib import Path

from .config import get
from .storage.db import ExportFilter, HistoryStore, HistoryStoreError, StoredMessage, parse_iso_ms

FORMATS = ("json", "csv", "jsonl")

CSV_COLUMNS = [
    "message_id",
    "conversation_jid",
    "sender_jid",
    "sender_e164",
    "sender_name",
    "body",
    "timestamp",
    "is_from_me",
    "reply_to_id",
    "media_path",
    "media_type",
    "location_lat",
    "location_lon",
    "account_id",
]


def render_json(store: HistoryStore, filters: ExportFilter) -> str:
    conversations = store.export_messages(filters)
    return json.dumps([c.to_dict() for c in conversations], indent=2, ensure_ascii=False)


def render_csv(messages: list[StoredMessage]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for msg in messages:
        row = asdict(msg)
        row["is_from_me"] = 1 if msg.is_from_me else 0
        writer.writerow(["" if row[c] is None else row[c] for c in CSV_COLUMNS])
    return buf.getvalue().rstrip("\n")


def render_jsonl(messages: list[StoredMessage]) -> str:
    return "\n".join(json.dumps(asdict(m), ensure_ascii=False) for m in messages)


def _validate(args) -> tuple[str, ExportFilter]:
    fmt = str(getattr(args, "format", None) or get("export.format", "json")).lower()
    if fmt not in FORMATS:
        raise ValueError(f"Invalid format: {fmt}. Must be one of: {', '.join(FORMATS)}")

    since = getattr(args, "since", None)
    until = getattr(args, "until", None)
    if since:
        parse_iso_ms(since, bound="--from")
    if until:
        parse_iso_ms(until, bound="--to")

    limit = getattr(args, "limit", None)
    if limit is not None and int(limit) <= 0:
        raise ValueError(f"Invalid --limit: {limit}. Must be a positive number")

    filters = ExportFilter(
        since=since,
        until=until,
        conversation_jid=getattr(args, "conversation", None),
        account_id=getattr(args, "account", None),
        limit=limit,
    )
    return fmt, filters


def run(args) -> int:
    verbose = bool(getattr(args, "verbose", False))
    store: HistoryStore | None = None

    try:
        fmt, filters = _validate(args)

        if verbose:
            print("Initializing WhatsApp history store...")

        store = HistoryStore(getattr(args, "db_path", None))
        store.initialize()

        if verbose:
            stats = store.get_stats()
            print(
                f"Database contains {stats.total_messages} messages "
                f"across {stats.total_conversations} conversations"
            )
            print("Exporting messages...")

        if fmt == "json":
            content = render_json(store, filters)
        elif fmt == "csv":
            content = render_csv(store.query_messages(filters))
        else:
            content = render_jsonl(store.query_messages(filters))

        output = Path(str(getattr(args, "output", None) or get("export.output"))).expanduser()
        output.write_text(content, encoding="utf-8")
    except (HistoryStoreError, ValueError, OSError) as e:
        print(f"Export failed: {e}", file=sys.stderr)
        return 1
    finally:
        if store is not None:
            store.close()

    if verbose:
        print(f"✓ Exported to {output}")
    else:
        print(output)
    return 0
