"""Pytest configuration and fixtures."""
import pytest

from wa_history import config
from wa_history.storage.db import HistoryStore, IncomingMessage

# 2024-01-01T00:00:00Z
T0 = 1_704_067_200_000


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Never read the developer's real config file."""
    monkeypatch.setattr(config, "CONFIG_PATHS", [tmp_path / "wa-history.yaml"])
    monkeypatch.setattr(config, "_config_cache", None)


@pytest.fixture
def store(tmp_path):
    s = HistoryStore(tmp_path / "history.sqlite")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def make_msg():
    """Build an IncomingMessage with sensible defaults."""

    def _make(**overrides) -> IncomingMessage:
        fields = dict(
            message_id="msg-1",
            conversation_jid="1234567890@s.whatsapp.net",
            chat_type="direct",
            sender_jid="1234567890@s.whatsapp.net",
            sender_e164="+1234567890",
            sender_name="Test User",
            body="Hello, world!",
            timestamp=T0,
            is_from_me=False,
            raw_message={"key": {"id": overrides.get("message_id", "msg-1")}},
            account_id="default",
        )
        fields.update(overrides)
        return IncomingMessage(**fields)

    return _make
