"""Push-versus-poll arbitration for one feed.

A `DeliveryGate` owns the polling timers of a single feed. Which mode it
settles on is decided by a policy object:

* `InstallationProbePolicy` asks whether the push integration is installed
  and polls continuously while it is not.
* `SilenceTimeoutPolicy` trusts pushes until they have been silent for longer
  than a threshold.

Both feeds share the temporary-polling fallback: a bounded window of frequent
polls, requested after faults, that ends after a number of empty polls or when
a safety timer fires, whichever comes first.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

import structlog

from feed_relay.errors import is_transient_error


logger = structlog.get_logger(__name__)

PollFn = Callable[[], Awaitable[int]]
ProbeFn = Callable[[], Awaitable[Any]]


class GateMode(str, Enum):
    IDLE = "idle"
    PUSH_ACTIVE = "push_active"
    CONTINUOUS_POLL = "continuous_poll"
    TEMPORARY_POLL = "temporary_poll"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timers(Protocol):
    def every(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> TimerHandle: ...

    def later(self, seconds: float, fn: Callable[[], Awaitable[None]], *, name: str) -> TimerHandle: ...


@dataclass(frozen=True)
class GateSettings:
    poll_interval: float
    check_interval: float
    temporary_max: float
    # None: temporary polling only ends on the safety timer.
    max_empty_polls: int | None = None


class GatePolicy(Protocol):
    async def evaluate(self, gate: DeliveryGate) -> None: ...

    def on_push(self, gate: DeliveryGate) -> None: ...

    async def after_temporary(self, gate: DeliveryGate) -> None: ...

    def snapshot(self) -> dict[str, Any]: ...


class InstallationProbePolicy:
    """Poll continuously unless the push integration is installed."""

    def __init__(self, probe: ProbeFn) -> None:
        self.probe = probe
        self.app_mode_active = False

    async def evaluate(self, gate: DeliveryGate) -> None:
        try:
            installation = await self.probe()
        except Exception as exc:
            logger.warning("Installation probe failed, falling back to temporary polling", gate=gate.name, error=str(exc))
            gate.enable_temporary_polling(reason="probe_failed")
            return

        if installation is not None:
            if not self.app_mode_active:
                self.app_mode_active = True
                gate.stop_continuous_polling()
                logger.info("Push integration installed, relying on webhooks", gate=gate.name)
            return

        if self.app_mode_active:
            self.app_mode_active = False
            logger.warning("Push integration no longer installed", gate=gate.name)
            gate.start_continuous_polling()
        elif not gate.continuous_polling:
            gate.start_continuous_polling()

    def on_push(self, gate: DeliveryGate) -> None:
        return

    async def after_temporary(self, gate: DeliveryGate) -> None:
        await gate.evaluate()

    def snapshot(self) -> dict[str, Any]:
        return {"app_mode_active": self.app_mode_active}


class SilenceTimeoutPolicy:
    """Poll only after pushes have been silent for `threshold` seconds.

    Before the first push has been seen the feed counts as silent.
    """

    def __init__(self, threshold: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.threshold = float(threshold)
        self._clock = clock
        self.last_push_at: float | None = None

    def silence(self) -> float | None:
        if self.last_push_at is None:
            return None
        return self._clock() - self.last_push_at

    async def evaluate(self, gate: DeliveryGate) -> None:
        if gate.polling:
            return
        silence = self.silence()
        if silence is None or silence > self.threshold:
            logger.warning(
                "No status webhooks received, starting to poll",
                gate=gate.name,
                silence_seconds=None if silence is None else round(silence),
            )
            gate.start_continuous_polling()

    def on_push(self, gate: DeliveryGate) -> None:
        self.last_push_at = self._clock()
        if gate.polling:
            logger.info("Webhook received, stopping polling", gate=gate.name)
            gate.stop_all_polling()

    async def after_temporary(self, gate: DeliveryGate) -> None:
        return

    def snapshot(self) -> dict[str, Any]:
        silence = self.silence()
        return {"silence_seconds": None if silence is None else round(silence, 1), "threshold": self.threshold}


class DeliveryGate:
    """Per-feed delivery mode plus the timers that implement it.

    `poll_fn` runs one reconciliation pass and returns how many entities it
    processed. Invocations never overlap: timer ticks that find a poll in
    flight are skipped, while `request_immediate_poll` waits its turn.
    """

    def __init__(
        self,
        name: str,
        poll_fn: PollFn,
        policy: GatePolicy,
        settings: GateSettings,
        timers: Timers,
    ) -> None:
        self.name = name
        self.poll_fn = poll_fn
        self.policy = policy
        self.settings = settings
        self.timers = timers

        self.mode = GateMode.IDLE
        self._started = False
        self._check: TimerHandle | None = None
        self._continuous: TimerHandle | None = None
        self._temporary: TimerHandle | None = None
        self._safety: TimerHandle | None = None
        self._lock = asyncio.Lock()
        self.empty_polls = 0
        self.last_poll_count: int | None = None
        self.last_error: str | None = None

    # --- state ---

    @property
    def continuous_polling(self) -> bool:
        return self._continuous is not None

    @property
    def temporary_polling(self) -> bool:
        return self._temporary is not None

    @property
    def polling(self) -> bool:
        return self.continuous_polling or self.temporary_polling

    def _settle_mode(self) -> None:
        if self._continuous is not None:
            self.mode = GateMode.CONTINUOUS_POLL
        elif self._temporary is not None:
            self.mode = GateMode.TEMPORARY_POLL
        else:
            self.mode = GateMode.PUSH_ACTIVE if self._started else GateMode.IDLE

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "empty_polls": self.empty_polls,
            "poll_in_flight": self._lock.locked(),
            "last_poll_count": self.last_poll_count,
            "last_error": self.last_error,
            **self.policy.snapshot(),
        }

    # --- lifecycle ---

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._settle_mode()
        self._check = self.timers.every(self.settings.check_interval, self.evaluate, name=f"{self.name}-check")
        logger.info("Delivery gate started", gate=self.name)
        await self.evaluate()

    def stop(self) -> None:
        for handle in (self._check, self._continuous, self._temporary, self._safety):
            if handle is not None:
                handle.cancel()
        self._check = self._continuous = self._temporary = self._safety = None
        self._started = False
        self.mode = GateMode.IDLE
        logger.info("Delivery gate stopped", gate=self.name)

    async def evaluate(self) -> None:
        await self.policy.evaluate(self)

    # --- continuous polling ---

    def start_continuous_polling(self) -> None:
        if self._continuous is not None:
            return
        self._cancel_temporary()
        self._continuous = self.timers.every(self.settings.poll_interval, self._poll_tick, name=f"{self.name}-poll")
        self._settle_mode()
        logger.info("Continuous polling started", gate=self.name, interval=self.settings.poll_interval)
        self.timers.later(0, self._poll_tick, name=f"{self.name}-poll-first")

    def stop_continuous_polling(self) -> None:
        if self._continuous is None:
            self._settle_mode()
            return
        self._continuous.cancel()
        self._continuous = None
        self._settle_mode()
        logger.info("Continuous polling stopped", gate=self.name)

    def stop_all_polling(self) -> None:
        self._cancel_temporary()
        self.stop_continuous_polling()

    # --- temporary polling ---

    def _cancel_temporary(self) -> None:
        for handle in (self._temporary, self._safety):
            if handle is not None:
                handle.cancel()
        self._temporary = None
        self._safety = None
        self.empty_polls = 0

    def _arm_safety(self) -> None:
        if self._safety is not None:
            self._safety.cancel()
        self._safety = self.timers.later(
            self.settings.temporary_max, self._on_safety_timeout, name=f"{self.name}-temporary-max"
        )

    def enable_temporary_polling(self, *, reason: str = "") -> None:
        """Poll frequently for a bounded window.

        A no-op while continuous polling runs. A repeated request re-arms the
        single safety timer and resets the empty-poll counter.
        """
        if self._continuous is not None:
            return
        self.empty_polls = 0
        if self._temporary is not None:
            self._arm_safety()
            logger.info("Temporary polling extended", gate=self.name, reason=reason)
            return
        self._temporary = self.timers.every(self.settings.poll_interval, self._poll_tick, name=f"{self.name}-temporary")
        self._arm_safety()
        self._settle_mode()
        logger.warning("Temporary polling enabled", gate=self.name, reason=reason, max_seconds=self.settings.temporary_max)
        self.timers.later(0, self._poll_tick, name=f"{self.name}-temporary-first")

    async def _on_safety_timeout(self) -> None:
        self._safety = None
        if self._temporary is not None:
            await self._finish_temporary("max_duration")

    async def _finish_temporary(self, reason: str) -> None:
        self._cancel_temporary()
        self._settle_mode()
        logger.info("Temporary polling finished", gate=self.name, reason=reason)
        if self._started:
            await self.policy.after_temporary(self)

    # --- polling ---

    async def _poll_tick(self) -> None:
        if self._lock.locked():
            logger.debug("Poll still in flight, skipping tick", gate=self.name)
            return
        if not self.polling:
            return
        try:
            count = await self._run_poll()
        except Exception as exc:
            logger.warning("Poll failed", gate=self.name, error=str(exc))
            return
        limit = self.settings.max_empty_polls
        if self._temporary is None or not limit:
            return
        if count > 0:
            self.empty_polls = 0
            return
        self.empty_polls += 1
        if self.empty_polls >= limit:
            await self._finish_temporary("empty_polls")

    async def run_exclusive(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run `fn` while holding the same lock as the poll function."""
        async with self._lock:
            return await fn()

    async def _run_poll(self) -> int:
        async with self._lock:
            try:
                count = int(await self.poll_fn() or 0)
            except Exception as exc:
                self.last_error = str(exc) or type(exc).__name__
                raise
            self.last_error = None
            self.last_poll_count = count
            return count

    async def request_immediate_poll(self) -> int:
        """Run one pass now. Transient failures also switch on temporary polling."""
        try:
            return await self._run_poll()
        except Exception as exc:
            self.handle_transient_error(exc)
            raise

    # --- signals ---

    def push_received(self) -> None:
        self.policy.on_push(self)

    def handle_transient_error(self, exc: BaseException) -> bool:
        if not is_transient_error(exc):
            return False
        logger.warning("Transient error reported", gate=self.name, error=str(exc))
        self.enable_temporary_polling(reason="transient_error")
        return True

    def handle_processing_error(self, exc: BaseException) -> None:
        logger.error("Push processing failed", gate=self.name, error=str(exc))
        self.enable_temporary_polling(reason="processing_error")
