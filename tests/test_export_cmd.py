from __future__ import annotations

import csv
import io
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from wa_history import export_cmd
from wa_history.storage.db import HistoryStore

T0 = 1_704_067_200_000


@pytest.fixture
def db_path(tmp_path: Path, make_msg) -> Path:
    path = tmp_path / "history.sqlite"
    store = HistoryStore(path)
    store.initialize()
    store.store_message(make_msg(message_id="a1", conversation_jid="A@s", timestamp=T0 + 10, display_name="Alice"))
    store.store_message(
        make_msg(
            message_id="b1",
            conversation_jid="B@g.us",
            chat_type="group",
            timestamp=T0,
            body='comma, "quote"\nnewline',
            is_from_me=True,
            location=(1.0, 2.0),
            account_id="work",
        )
    )
    store.store_message(make_msg(message_id="a2", conversation_jid="A@s", timestamp=T0 + 20))
    store.close()
    return path


def _args(db_path: Path, output: Path | None = None, **kw) -> SimpleNamespace:
    base = dict(
        format="json",
        output=str(output) if output else None,
        since=None,
        until=None,
        conversation=None,
        account=None,
        limit=None,
        db_path=str(db_path),
        verbose=False,
    )
    base.update(kw)
    return SimpleNamespace(**base)


def test_export_json_is_grouped(db_path, tmp_path, capsys):
    out = tmp_path / "out.json"

    rc = export_cmd.run(_args(db_path, out))

    assert rc == 0
    assert capsys.readouterr().out.strip() == str(out)
    data = json.loads(out.read_text())
    assert [c["jid"] for c in data] == ["B@g.us", "A@s"]
    assert data[0]["chatType"] == "group"
    assert data[1]["displayName"] == "Alice"
    assert [m["messageId"] for m in data[1]["messages"]] == ["a1", "a2"]


def test_export_csv_escapes_and_blanks_nulls(db_path, tmp_path):
    out = tmp_path / "out.csv"

    rc = export_cmd.run(_args(db_path, out, format="CSV"))

    assert rc == 0
    rows = list(csv.reader(io.StringIO(out.read_text())))
    assert rows[0] == export_cmd.CSV_COLUMNS
    assert len(rows) == 4

    first = dict(zip(rows[0], rows[1]))
    assert first["message_id"] == "b1"
    assert first["body"] == 'comma, "quote"\nnewline'
    assert first["is_from_me"] == "1"
    assert first["location_lat"] == "1.0"
    assert first["reply_to_id"] == ""
    assert first["account_id"] == "work"


def test_export_jsonl_has_one_flat_row_per_line(db_path, tmp_path):
    out = tmp_path / "out.jsonl"

    rc = export_cmd.run(_args(db_path, out, format="jsonl"))

    assert rc == 0
    lines = out.read_text().splitlines()
    assert len(lines) == 3
    rows = [json.loads(line) for line in lines]
    assert [r["message_id"] for r in rows] == ["b1", "a1", "a2"]
    assert json.loads(rows[0]["raw_message"]) == {"key": {"id": "b1"}}


def test_export_applies_filters(db_path, tmp_path):
    out = tmp_path / "out.jsonl"

    rc = export_cmd.run(_args(db_path, out, format="jsonl", conversation="A@s", limit=1))

    assert rc == 0
    rows = [json.loads(line) for line in out.read_text().splitlines()]
    assert [r["message_id"] for r in rows] == ["a1"]


def test_export_verbose_reports_progress(db_path, tmp_path, capsys):
    out = tmp_path / "out.json"

    rc = export_cmd.run(_args(db_path, out, verbose=True))

    assert rc == 0
    stdout = capsys.readouterr().out
    assert "Database contains 3 messages across 2 conversations" in stdout
    assert f"Exported to {out}" in stdout


def test_export_rejects_unknown_format(db_path, tmp_path, capsys):
    rc = export_cmd.run(_args(db_path, tmp_path / "out.xml", format="xml"))

    assert rc == 1
    assert "Export failed: Invalid format: xml" in capsys.readouterr().err


def test_export_rejects_malformed_date_before_opening_store(tmp_path, capsys):
    db = tmp_path / "never" / "history.sqlite"

    rc = export_cmd.run(_args(db, tmp_path / "out.json", since="not-a-date"))

    assert rc == 1
    assert "--from" in capsys.readouterr().err
    assert not db.exists()


def test_export_rejects_non_positive_limit(db_path, tmp_path, capsys):
    rc = export_cmd.run(_args(db_path, tmp_path / "out.json", limit=0))

    assert rc == 1
    assert "Invalid --limit" in capsys.readouterr().err


def test_export_closes_store_when_write_fails(db_path, tmp_path, monkeypatch, capsys):
    opened: list[HistoryStore] = []
    real_init = HistoryStore.initialize

    def tracking_init(self):
        opened.append(self)
        real_init(self)

    monkeypatch.setattr(HistoryStore, "initialize", tracking_init)

    rc = export_cmd.run(_args(db_path, tmp_path / "missing-dir" / "out.json"))

    assert rc == 1
    assert "Export failed" in capsys.readouterr().err
    assert opened and opened[0].is_open is False


def test_export_uses_config_defaults(db_path, tmp_path, monkeypatch):
    from wa_history import config

    out = tmp_path / "from-config.jsonl"
    monkeypatch.setattr(
        config,
        "_config_cache",
        config._deep_merge(config.DEFAULT_CONFIG, {"export": {"format": "jsonl", "output": str(out)}}),
    )

    rc = export_cmd.run(_args(db_path, format=None))

    assert rc == 0
    assert len(out.read_text().splitlines()) == 3
