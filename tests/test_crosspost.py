from __future__ import annotations

import pytest

from feed_relay.chat.crosspost import Crossposter
from feed_relay.errors import PlatformError, PlatformErrorKind


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_rate_limited_channel_is_parked_then_retried(platform) -> None:
    clock = _Clock()
    poster = Crossposter(platform, cooldown_seconds=600, clock=clock)
    platform.crosspost_errors.append(PlatformError(PlatformErrorKind.RATE_LIMITED, status=429, code=20031))

    assert await poster.crosspost("news", "m1") is False
    assert await poster.crosspost("news", "m2") is False
    assert poster.pending_count() == 2
    assert platform.crossposts == []

    assert await poster.retry_pending() == 0
    clock.now += 601
    assert await poster.retry_pending() == 2
    assert platform.crossposts == [("news", "m1"), ("news", "m2")]
    assert poster.pending_count() == 0


@pytest.mark.asyncio
async def test_missing_message_is_dropped(platform) -> None:
    poster = Crossposter(platform)
    platform.crosspost_errors.append(PlatformError(PlatformErrorKind.NOT_FOUND, status=404, code=10008))
    assert await poster.crosspost("news", "m1") is False
    assert poster.pending_count() == 0
