from __future__ import annotations

import time
from typing import Callable, Iterable, Mapping

import structlog

from feed_relay.errors import NoCredentialsError
from feed_relay.models import SourceCredential
from feed_relay.store import RelayStore


logger = structlog.get_logger(__name__)


class CredentialPool:
    """Rotating pool of API tokens persisted in the store.

    A token is usable while it is active and either has quota left or its
    rate-limit window has already reset. The token with the most quota left
    wins.
    """

    def __init__(self, store: RelayStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def initialize_from_env(self, tokens: Iterable[str]) -> int:
        added = 0
        for token in tokens:
            if self.store.add_credential(token):
                added += 1
        if added:
            logger.info("Added tokens to the pool", count=added)
        return added

    def _available(self) -> list[SourceCredential]:
        now = self._clock()
        usable = [
            c
            for c in self.store.list_credentials(active_only=True)
            if c.rate_limit_remaining > 0 or (c.rate_limit_reset_ts or 0) < now
        ]
        usable.sort(key=lambda c: c.rate_limit_remaining, reverse=True)
        return usable

    def has_available(self) -> bool:
        return bool(self._available())

    def acquire(self, *, exclude: Iterable[str] = ()) -> SourceCredential:
        skip = set(exclude)
        for cred in self._available():
            if cred.token in skip:
                continue
            self.store.mark_credential_used(cred.token)
            return cred
        raise NoCredentialsError("no usable source credential")

    def record_rate_limit(self, token: str, headers: Mapping[str, str]) -> None:
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if remaining is None:
            return
        try:
            remaining_n = int(remaining)
            reset_ts = float(reset) if reset is not None else None
        except ValueError:
            return
        self.store.update_credential_rate_limit(token, remaining=remaining_n, reset_ts=reset_ts)

    def deactivate(self, token: str) -> None:
        if self.store.deactivate_credential(token):
            logger.warning("Deactivated source token", token=SourceCredential(token=token).hint)
