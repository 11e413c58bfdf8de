from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from feed_relay.render import MessagePayload


@dataclass(frozen=True)
class ChannelInfo:
    id: str
    guild_id: str | None = None
    is_announcement: bool = False


class ChatPlatform(Protocol):
    """Outbound chat operations. Failures raise `PlatformError`."""

    async def get_channel(self, channel_id: str) -> ChannelInfo | None: ...

    async def send(self, channel_id: str, payload: MessagePayload) -> str: ...

    async def edit(self, channel_id: str, message_id: str, payload: MessagePayload) -> None: ...

    async def crosspost(self, channel_id: str, message_id: str) -> None: ...
