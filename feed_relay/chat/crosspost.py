from __future__ import annotations

import time
from typing import Callable

import structlog

from feed_relay.chat.base import ChatPlatform
from feed_relay.errors import PlatformError, PlatformErrorKind
from feed_relay.expiring import ExpiringMap


logger = structlog.get_logger(__name__)

UNKNOWN_PUBLISH = 10017


class Crossposter:
    """Publishes announcement-channel messages, parking channels that hit the publish limit.

    Messages that could not be published during a cooldown are queued and
    retried by `retry_pending()` once the channel's cooldown has expired.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        *,
        cooldown_seconds: float = 10 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.platform = platform
        self._cooldowns: ExpiringMap[str, bool] = ExpiringMap(cooldown_seconds, clock=clock)
        self._pending: dict[str, list[str]] = {}

    def _queue(self, channel_id: str, message_id: str) -> None:
        queued = self._pending.setdefault(channel_id, [])
        if message_id not in queued:
            queued.append(message_id)

    def pending_count(self) -> int:
        return sum(len(v) for v in self._pending.values())

    async def crosspost(self, channel_id: str, message_id: str) -> bool:
        if channel_id in self._cooldowns:
            self._queue(channel_id, message_id)
            return False
        try:
            await self.platform.crosspost(channel_id, message_id)
        except PlatformError as exc:
            if exc.kind is PlatformErrorKind.RATE_LIMITED:
                self._cooldowns.set(channel_id, True)
                self._queue(channel_id, message_id)
                logger.warning("Channel hit the publish limit, queued for retry", channel_id=channel_id)
            elif exc.kind is PlatformErrorKind.NOT_FOUND or exc.code == UNKNOWN_PUBLISH:
                logger.debug("Crosspost target is gone", channel_id=channel_id, message_id=message_id)
            else:
                logger.error("Crosspost failed", channel_id=channel_id, message_id=message_id, error=str(exc))
            return False
        logger.info("Crossposted message", channel_id=channel_id, message_id=message_id)
        return True

    async def retry_pending(self) -> int:
        published = 0
        for channel_id in list(self._pending):
            if channel_id in self._cooldowns:
                continue
            for message_id in self._pending.pop(channel_id, []):
                if await self.crosspost(channel_id, message_id):
                    published += 1
        return published
