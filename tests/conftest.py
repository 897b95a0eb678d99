"""In-memory stand-ins for the sheet and Discord clients."""
from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

import relay

TZ = ZoneInfo("America/Toronto")
NOW = datetime(2026, 1, 18, 12, 0, tzinfo=TZ)
HEADER = ["send_at", "channel_id", "message", "sent", "sent_at", "notes"]


class FakeSheet:
    def __init__(self, rows):
        self.rows = [list(r) for r in rows]
        self.writes = []
        self.fail_writes = False

    def read_rows(self):
        return [list(r) for r in self.rows]

    def mark_sent(self, row_number, sent_col, sent_at_col, sent_at):
        if self.fail_writes:
            raise RuntimeError("quota exceeded")
        self.writes.append((row_number, sent_col, sent_at_col, sent_at))
        row = self.rows[row_number - 1]
        row.extend([""] * (max(sent_col, sent_at_col) + 1 - len(row)))
        row[sent_col] = "TRUE"
        row[sent_at_col] = sent_at


class FakeDiscord:
    def __init__(self, channels=None):
        self.channels = channels if channels is not None else {"100": {"id": "100", "type": 0}}
        self.sent = []
        self.fail_sends = set()
        self.closed = False

    def fetch_channel(self, channel_id):
        return self.channels.get(channel_id)

    is_text_channel = staticmethod(relay.DiscordClient.is_text_channel)

    def send_message(self, channel_id, content):
        if channel_id in self.fail_sends:
            raise RuntimeError("Missing Access")
        self.sent.append((channel_id, content))
        return {"id": str(len(self.sent))}

    def whoami(self):
        return {"username": "relay-bot"}

    def close(self):
        self.closed = True


@pytest.fixture
def make_ctx():
    def _make(rows, roles=None, channels=None, dry_run=False):
        settings = relay.Settings(bot_token="token", sheet_id="sheet", timezone="America/Toronto", dry_run=dry_run)
        return relay.RelayContext(
            settings=settings,
            sheet=FakeSheet(rows),
            discord=FakeDiscord(channels),
            roles=roles or {},
        )
    return _make
