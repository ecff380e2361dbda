from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..config import get

LOG = logging.getLogger(__name__)

DEFAULT_DB_PATH = "~/.wa-history/whatsapp-history.sqlite"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class HistoryStoreError(Exception):
    """Base class for history store errors."""


class NotInitialized(HistoryStoreError):
    def __init__(self, operation: str):
        super().__init__(f"History store is not initialized (operation: {operation})")
        self.operation = operation


class InvalidFilter(HistoryStoreError, ValueError):
    pass


class StorageFailure(HistoryStoreError):
    """Wraps an engine-level error raised during schema setup, write or read."""


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass
class IncomingMessage:
    message_id: str
    conversation_jid: str
    chat_type: str
    sender_jid: str | None
    sender_e164: str | None
    sender_name: str | None
    body: str
    timestamp: int
    is_from_me: bool
    raw_message: Any
    account_id: str
    reply_to_id: str | None = None
    media_path: str | None = None
    media_type: str | None = None
    location: tuple[float, float] | None = None
    display_name: str | None = None
    group_participants: list[str] | None = None


@dataclass
class ExportFilter:
    since: str | datetime | None = None
    until: str | datetime | None = None
    conversation_jid: str | None = None
    account_id: str | None = None
    limit: int | None = None


@dataclass
class StoredMessage:
    message_id: str
    conversation_jid: str
    sender_jid: str | None
    sender_e164: str | None
    sender_name: str | None
    body: str
    timestamp: int
    is_from_me: bool
    reply_to_id: str | None
    media_path: str | None
    media_type: str | None
    location_lat: float | None
    location_lon: float | None
    raw_message: str
    account_id: str
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredMessage":
        data = dict(row)
        data["is_from_me"] = bool(data["is_from_me"])
        return cls(**data)


@dataclass
class ExportedMessage:
    message_id: str
    sender_jid: str | None
    sender_e164: str | None
    sender_name: str | None
    body: str
    timestamp: int
    is_from_me: bool
    reply_to_id: str | None
    media_path: str | None
    media_type: str | None
    location: tuple[float, float] | None

    @classmethod
    def from_stored(cls, msg: StoredMessage) -> "ExportedMessage":
        location = None
        if msg.location_lat is not None and msg.location_lon is not None:
            location = (msg.location_lat, msg.location_lon)
        return cls(
            message_id=msg.message_id,
            sender_jid=msg.sender_jid,
            sender_e164=msg.sender_e164,
            sender_name=msg.sender_name,
            body=msg.body,
            timestamp=msg.timestamp,
            is_from_me=msg.is_from_me,
            reply_to_id=msg.reply_to_id,
            media_path=msg.media_path,
            media_type=msg.media_type,
            location=location,
        )

    def to_dict(self) -> dict:
        return {
            "messageId": self.message_id,
            "senderJid": self.sender_jid,
            "senderE164": self.sender_e164,
            "senderName": self.sender_name,
            "body": self.body,
            "timestamp": self.timestamp,
            "isFromMe": self.is_from_me,
            "replyToId": self.reply_to_id,
            "mediaPath": self.media_path,
            "mediaType": self.media_type,
            "location": {"lat": self.location[0], "lon": self.location[1]} if self.location else None,
        }


@dataclass
class ExportedConversation:
    jid: str
    chat_type: str
    display_name: str | None
    messages: list[ExportedMessage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "jid": self.jid,
            "chatType": self.chat_type,
            "displayName": self.display_name,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class HistoryStats:
    total_messages: int
    total_conversations: int
    oldest_message: int | None
    newest_message: int | None


# -----------------------------------------------------------------------------
# Schema
# -----------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
  jid TEXT PRIMARY KEY,
  chat_type TEXT NOT NULL,
  display_name TEXT,
  last_message_at INTEGER NOT NULL,
  created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
  message_id TEXT NOT NULL,
  conversation_jid TEXT NOT NULL,
  sender_jid TEXT,
  sender_e164 TEXT,
  sender_name TEXT,
  body TEXT NOT NULL,
  timestamp INTEGER NOT NULL,
  is_from_me INTEGER NOT NULL,
  reply_to_id TEXT,
  media_path TEXT,
  media_type TEXT,
  location_lat REAL,
  location_lon REAL,
  raw_message TEXT NOT NULL,
  account_id TEXT NOT NULL,
  created_at INTEGER NOT NULL,
  PRIMARY KEY (conversation_jid, message_id)
);

CREATE TABLE IF NOT EXISTS participants (
  conversation_jid TEXT NOT NULL,
  participant_jid TEXT NOT NULL,
  participant_e164 TEXT,
  joined_at INTEGER NOT NULL,
  PRIMARY KEY (conversation_jid, participant_jid)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation_timestamp ON messages(conversation_jid, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_sender_e164 ON messages(sender_e164);
CREATE INDEX IF NOT EXISTS idx_messages_account_id ON messages(account_id);
"""


def default_db_path() -> Path:
    return Path(str(get("db_path", DEFAULT_DB_PATH))).expanduser()


def ensure_schema(conn: sqlite3.Connection) -> None:
    with conn:
        conn.executescript(SCHEMA)


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_iso_ms(value: str | datetime, *, bound: str = "date") -> int:
    """Convert an ISO-8601 string (or datetime) into epoch milliseconds.

    Date-only values mean UTC midnight; naive date-times are read as UTC.
    Raises InvalidFilter for anything that does not parse.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise InvalidFilter(f"Invalid {bound} date: {value!r}. Use ISO 8601 format (e.g., 2024-01-01)") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def _where_clause(filters: ExportFilter) -> tuple[str, list[object]]:
    where: list[str] = []
    params: list[object] = []

    if filters.since:
        where.append("timestamp >= ?")
        params.append(parse_iso_ms(filters.since, bound="since"))
    if filters.until:
        where.append("timestamp <= ?")
        params.append(parse_iso_ms(filters.until, bound="until"))
    if filters.conversation_jid:
        where.append("conversation_jid = ?")
        params.append(filters.conversation_jid)
    if filters.account_id:
        where.append("account_id = ?")
        params.append(filters.account_id)

    clause = (" WHERE " + " AND ".join(where)) if where else ""
    return clause, params


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class HistoryStore:
    """SQLite-backed message history for one or more logged-in accounts.

    Lifecycle is explicit: call initialize() before use and close() on every
    exit path. All read/write operations raise NotInitialized otherwise.
    """

    def __init__(self, db_path: str | Path | None = None, *, log: logging.Logger | None = None):
        if db_path is None:
            self.db_path = default_db_path()
        elif str(db_path) == ":memory:":
            self.db_path = Path(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
        self.log = log or LOG
        self._conn: sqlite3.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> sqlite3.Connection:
        return self._require("conn")

    def _require(self, operation: str) -> sqlite3.Connection:
        if self._conn is None:
            raise NotInitialized(operation)
        return self._conn

    def initialize(self) -> None:
        if self._conn is not None:
            return

        in_memory = str(self.db_path) == ":memory:"
        if not in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = None
        try:
            conn = sqlite3.connect(":memory:" if in_memory else self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
            ensure_schema(conn)
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            self.log.error("Failed to initialize history database at %s: %s", self.db_path, e)
            raise StorageFailure(f"Failed to initialize history database: {e}") from e

        self._conn = conn
        self.log.info("WhatsApp history database initialized at %s", self.db_path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def store_message(self, msg: IncomingMessage) -> None:
        """Persist one message plus its conversation/participant side effects.

        The conversation row is always upserted before the message row.
        Errors are logged and re-raised; nothing is retried here.
        """
        conn = self._require("store_message")
        now = _now_ms()

        try:
            raw_json = json.dumps(msg.raw_message, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            self.log.error("Failed to store message: raw payload is not serializable: %s", e)
            raise StorageFailure(f"Raw message payload is not JSON-serializable: {e}") from e

        lat, lon = msg.location if msg.location is not None else (None, None)

        try:
            with conn:
                conn.execute(
                    "INSERT INTO conversations(jid, chat_type, display_name, last_message_at, created_at) VALUES (?,?,?,?,?) "
                    "ON CONFLICT(jid) DO UPDATE SET display_name=COALESCE(excluded.display_name, display_name), "
                    "last_message_at=excluded.last_message_at",
                    (msg.conversation_jid, msg.chat_type, msg.display_name, msg.timestamp, now),
                )

                conn.execute(
                    "INSERT OR REPLACE INTO messages("
                    "message_id, conversation_jid, sender_jid, sender_e164, sender_name, "
                    "body, timestamp, is_from_me, reply_to_id, media_path, media_type, "
                    "location_lat, location_lon, raw_message, account_id, created_at"
                    ") VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        msg.message_id,
                        msg.conversation_jid,
                        msg.sender_jid,
                        msg.sender_e164,
                        msg.sender_name,
                        msg.body,
                        msg.timestamp,
                        1 if msg.is_from_me else 0,
                        msg.reply_to_id,
                        msg.media_path,
                        msg.media_type,
                        lat,
                        lon,
                        raw_json,
                        msg.account_id,
                        now,
                    ),
                )

                if msg.chat_type == "group" and msg.group_participants:
                    conn.executemany(
                        "INSERT OR IGNORE INTO participants(conversation_jid, participant_jid, participant_e164, joined_at) VALUES (?,?,?,?)",
                        [(msg.conversation_jid, p, None, now) for p in msg.group_participants],
                    )
        except sqlite3.Error as e:
            self.log.error("Failed to store message: %s", e)
            raise StorageFailure(f"Failed to store message {msg.message_id!r}: {e}") from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query_messages(self, filters: ExportFilter | None = None) -> list[StoredMessage]:
        """Return matching messages, oldest first.

        With a limit, the earliest N matches are returned (not the latest).
        """
        conn = self._require("query_messages")
        filters = filters or ExportFilter()

        try:
            if filters.limit is not None and (isinstance(filters.limit, bool) or int(filters.limit) <= 0):
                raise InvalidFilter(f"Invalid limit: {filters.limit}. Must be a positive number")
            where, params = _where_clause(filters)
        except InvalidFilter as e:
            self.log.error("Rejected message filter: %s", e)
            raise

        sql = "SELECT * FROM messages" + where + " ORDER BY timestamp ASC"
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(int(filters.limit))

        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            self.log.error("Failed to query messages: %s", e)
            raise StorageFailure(f"Failed to query messages: {e}") from e

        return [StoredMessage.from_row(r) for r in rows]

    def export_messages(self, filters: ExportFilter | None = None) -> list[ExportedConversation]:
        """Group the filtered query by conversation.

        Groups follow the order in which each conversation first appears in
        the ascending stream; metadata is fetched once per conversation.
        """
        conn = self._require("export_messages")

        groups: dict[str, ExportedConversation] = {}
        for msg in self.query_messages(filters):
            conv = groups.get(msg.conversation_jid)
            if conv is None:
                try:
                    meta = conn.execute(
                        "SELECT chat_type, display_name FROM conversations WHERE jid=?",
                        (msg.conversation_jid,),
                    ).fetchone()
                except sqlite3.Error as e:
                    self.log.error("Failed to load conversation %s: %s", msg.conversation_jid, e)
                    raise StorageFailure(f"Failed to load conversation metadata: {e}") from e

                conv = ExportedConversation(
                    jid=msg.conversation_jid,
                    chat_type=(meta["chat_type"] if meta else None) or "direct",
                    display_name=meta["display_name"] if meta else None,
                )
                groups[msg.conversation_jid] = conv

            conv.messages.append(ExportedMessage.from_stored(msg))

        return list(groups.values())

    def get_stats(self) -> HistoryStats:
        conn = self._require("get_stats")
        try:
            msgs = conn.execute(
                "SELECT COUNT(*) AS n, MIN(timestamp) AS oldest, MAX(timestamp) AS newest FROM messages"
            ).fetchone()
            convs = conn.execute("SELECT COUNT(*) AS n FROM conversations").fetchone()
        except sqlite3.Error as e:
            self.log.error("Failed to read history stats: %s", e)
            raise StorageFailure(f"Failed to read history stats: {e}") from e

        return HistoryStats(
            total_messages=int(msgs["n"]),
            total_conversations=int(convs["n"]),
            oldest_message=msgs["oldest"],
            newest_message=msgs["newest"],
        )
