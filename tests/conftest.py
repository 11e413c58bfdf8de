from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable

import pytest

from feed_relay.chat.base import ChannelInfo
from feed_relay.errors import PlatformError
from feed_relay.models import Incident
from feed_relay.render import MessagePayload
from feed_relay.store import RelayStore


class FakePlatform:
    def __init__(self) -> None:
        self.channels: dict[str, ChannelInfo] = {}
        self.sent: list[tuple[str, str, MessagePayload]] = []
        self.edits: list[tuple[str, str, MessagePayload]] = []
        self.crossposts: list[tuple[str, str]] = []
        self.send_errors: dict[str, PlatformError] = {}
        self.edit_errors: dict[str, PlatformError] = {}
        self.crosspost_errors: list[PlatformError] = []
        self._next_id = 1000

    def add_channel(self, channel_id: str, *, guild_id: str = "g1", announcement: bool = False) -> ChannelInfo:
        info = ChannelInfo(id=channel_id, guild_id=guild_id, is_announcement=announcement)
        self.channels[channel_id] = info
        return info

    async def get_channel(self, channel_id: str) -> ChannelInfo | None:
        return self.channels.get(channel_id)

    async def send(self, channel_id: str, payload: MessagePayload) -> str:
        if channel_id in self.send_errors:
            raise self.send_errors[channel_id]
        self._next_id += 1
        message_id = str(self._next_id)
        self.sent.append((channel_id, message_id, payload))
        return message_id

    async def edit(self, channel_id: str, message_id: str, payload: MessagePayload) -> None:
        if message_id in self.edit_errors:
            raise self.edit_errors[message_id]
        self.edits.append((channel_id, message_id, payload))

    async def crosspost(self, channel_id: str, message_id: str) -> None:
        if self.crosspost_errors:
            raise self.crosspost_errors.pop(0)
        self.crossposts.append((channel_id, message_id))


class FakeTimer:
    def __init__(self, kind: str, seconds: float, fn: Callable[[], Awaitable[None]], name: str) -> None:
        self.kind = kind
        self.seconds = seconds
        self.fn = fn
        self.name = name
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimers:
    """Records scheduled callbacks; tests fire them by hand."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def every(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> FakeTimer:
        t = FakeTimer("every", seconds, fn, name)
        self.timers.append(t)
        return t

    def later(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> FakeTimer:
        t = FakeTimer("later", seconds, fn, name)
        self.timers.append(t)
        return t

    def active(self, name: str) -> list[FakeTimer]:
        return [t for t in self.timers if t.name == name and not t.cancelled]

    async def fire(self, name: str) -> None:
        live = self.active(name)
        assert live, f"no active timer named {name}"
        timer = live[-1]
        if timer.kind == "later":
            timer.cancelled = True
        await timer.fn()


def build_incident(
    incident_id: str,
    *,
    updates: list[tuple[str, str, str]] | None = None,
    name: str = "API errors",
    impact: str = "minor",
    status: str | None = None,
    components: tuple[str, ...] = (),
    scheduled_for: str | None = None,
) -> Incident:
    """`updates` are (id, status, created_at) tuples, newest first as the status page returns them."""
    ups = updates or []
    return Incident.from_json(
        {
            "id": incident_id,
            "name": name,
            "status": status or (ups[0][1] if ups else "investigating"),
            "impact": impact,
            "created_at": ups[-1][2] if ups else "2024-05-01T10:00:00Z",
            "updated_at": ups[0][2] if ups else "2024-05-01T10:00:00Z",
            "scheduled_for": scheduled_for,
            "components": [{"name": c} for c in components],
            "incident_updates": [
                {"id": uid, "status": st, "body": f"{st} body {uid}", "created_at": ts} for uid, st, ts in ups
            ],
        }
    )


@pytest.fixture()
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture()
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture()
def store(tmp_path: Path) -> RelayStore:
    s = RelayStore(str(tmp_path / "relay.db"))
    s.ensure_schema()
    return s


@pytest.fixture()
def make_incident() -> Callable[..., Incident]:
    return build_incident


@pytest.fixture()
def comment_json() -> Callable[..., dict[str, Any]]:
    def _make(comment_id: int, body: str = "## Strings\n- added `FOO`", sha: str = "abcdef1234567890") -> dict[str, Any]:
        return {
            "id": comment_id,
            "body": body,
            "commit_id": sha,
            "html_url": f"https://github.com/Discord-Datamining/Discord-Datamining/commit/{sha}#commitcomment-{comment_id}",
            "url": f"https://api.github.test/repos/Discord-Datamining/Discord-Datamining/comments/{comment_id}",
            "user": {"login": "datamine-bot", "html_url": "https://github.com/datamine-bot"},
            "created_at": "2024-05-01T10:00:00Z",
        }

    return _make
