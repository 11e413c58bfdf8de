from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from feed_relay.gate import DeliveryGate, GateMode, GateSettings, InstallationProbePolicy, SilenceTimeoutPolicy


class _Clock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


class _Probe:
    def __init__(self, result: Any = None) -> None:
        self.result = result
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _Poll:
    def __init__(self, results: list[Any] | None = None) -> None:
        self.results = list(results or [])
        self.calls = 0

    async def __call__(self) -> int:
        self.calls += 1
        value = self.results.pop(0) if self.results else 0
        if isinstance(value, Exception):
            raise value
        return int(value)


def _comment_gate(timers, probe: _Probe, poll: _Poll) -> DeliveryGate:
    return DeliveryGate(
        "previews",
        poll,
        InstallationProbePolicy(probe),
        GateSettings(poll_interval=15, check_interval=600, temporary_max=900, max_empty_polls=2),
        timers,
    )


def _status_gate(timers, poll: _Poll, clock: _Clock, threshold: float = 3600) -> DeliveryGate:
    return DeliveryGate(
        "status",
        poll,
        SilenceTimeoutPolicy(threshold, clock=clock),
        GateSettings(poll_interval=60, check_interval=60, temporary_max=900),
        timers,
    )


@pytest.mark.asyncio
async def test_comment_gate_polls_when_integration_missing(timers) -> None:
    gate = _comment_gate(timers, _Probe(None), _Poll())
    await gate.start()
    assert gate.mode is GateMode.CONTINUOUS_POLL
    assert len(timers.active("previews-poll")) == 1
    assert timers.active("previews-poll")[0].seconds == 15


@pytest.mark.asyncio
async def test_continuous_polling_runs_first_pass_immediately(timers) -> None:
    poll = _Poll([3])
    gate = _comment_gate(timers, _Probe(None), poll)
    await gate.start()
    first = timers.active("previews-poll-first")
    assert len(first) == 1
    assert first[0].seconds == 0

    await timers.fire("previews-poll-first")
    assert poll.calls == 1
    assert gate.last_poll_count == 3
    assert timers.active("previews-poll-first") == []


@pytest.mark.asyncio
async def test_comment_gate_relies_on_pushes_when_installed(timers) -> None:
    probe = _Probe(4242)
    gate = _comment_gate(timers, probe, _Poll())
    await gate.start()
    assert gate.mode is GateMode.PUSH_ACTIVE
    assert timers.active("previews-poll") == []

    probe.result = None
    await timers.fire("previews-check")
    assert gate.mode is GateMode.CONTINUOUS_POLL

    probe.result = 4242
    await timers.fire("previews-check")
    assert gate.mode is GateMode.PUSH_ACTIVE
    assert timers.active("previews-poll") == []
    assert probe.calls == 3


@pytest.mark.asyncio
async def test_probe_failure_enables_temporary_polling(timers) -> None:
    gate = _comment_gate(timers, _Probe(httpx.ConnectError("boom")), _Poll())
    await gate.start()
    assert gate.mode is GateMode.TEMPORARY_POLL
    assert len(timers.active("previews-temporary")) == 1
    assert len(timers.active("previews-temporary-max")) == 1
    assert timers.active("previews-temporary-first")[0].seconds == 0


@pytest.mark.asyncio
async def test_temporary_polling_is_noop_under_continuous(timers) -> None:
    gate = _comment_gate(timers, _Probe(None), _Poll())
    await gate.start()
    gate.enable_temporary_polling(reason="test")
    assert gate.mode is GateMode.CONTINUOUS_POLL
    assert timers.active("previews-temporary") == []


@pytest.mark.asyncio
async def test_repeat_temporary_request_rearms_single_safety_timer(timers) -> None:
    gate = _comment_gate(timers, _Probe(1), _Poll())
    await gate.start()
    gate.enable_temporary_polling(reason="first")
    gate.empty_polls = 1
    gate.enable_temporary_polling(reason="second")

    assert len(timers.active("previews-temporary")) == 1
    assert len(timers.active("previews-temporary-max")) == 1
    assert len([t for t in timers.timers if t.name == "previews-temporary-max"]) == 2
    assert gate.empty_polls == 0


@pytest.mark.asyncio
async def test_temporary_polling_ends_after_empty_polls(timers) -> None:
    poll = _Poll([1, 0, 0])
    gate = _comment_gate(timers, _Probe(1), poll)
    await gate.start()
    gate.enable_temporary_polling(reason="test")

    await timers.fire("previews-temporary")
    assert gate.empty_polls == 0
    await timers.fire("previews-temporary")
    assert gate.mode is GateMode.TEMPORARY_POLL
    await timers.fire("previews-temporary")

    assert poll.calls == 3
    assert gate.mode is GateMode.PUSH_ACTIVE
    assert timers.active("previews-temporary") == []
    assert timers.active("previews-temporary-max") == []


@pytest.mark.asyncio
async def test_safety_timer_ends_temporary_polling(timers) -> None:
    gate = _comment_gate(timers, _Probe(1), _Poll())
    await gate.start()
    gate.enable_temporary_polling(reason="test")
    await timers.fire("previews-temporary-max")
    assert gate.mode is GateMode.PUSH_ACTIVE
    assert timers.active("previews-temporary") == []


@pytest.mark.asyncio
async def test_status_gate_polls_on_cold_start_until_first_push(timers) -> None:
    clock = _Clock()
    gate = _status_gate(timers, _Poll(), clock)
    await gate.start()
    assert gate.mode is GateMode.CONTINUOUS_POLL

    gate.push_received()
    assert gate.mode is GateMode.PUSH_ACTIVE
    assert timers.active("status-poll") == []


@pytest.mark.asyncio
async def test_status_gate_silence_threshold(timers) -> None:
    clock = _Clock()
    gate = _status_gate(timers, _Poll(), clock)
    await gate.start()
    gate.push_received()

    clock.now += 1
    await timers.fire("status-check")
    assert gate.mode is GateMode.PUSH_ACTIVE

    clock.now += 2 * 60 * 60
    await timers.fire("status-check")
    assert gate.mode is GateMode.CONTINUOUS_POLL
    assert gate.snapshot()["silence_seconds"] == 7201


@pytest.mark.asyncio
async def test_status_temporary_polling_only_ends_on_safety_timer(timers) -> None:
    clock = _Clock()
    poll = _Poll()
    gate = _status_gate(timers, poll, clock)
    await gate.start()
    gate.push_received()
    gate.enable_temporary_polling(reason="test")

    for _ in range(5):
        await timers.fire("status-temporary")
    assert poll.calls == 5
    assert gate.mode is GateMode.TEMPORARY_POLL

    await timers.fire("status-temporary-max")
    assert gate.mode is GateMode.PUSH_ACTIVE


@pytest.mark.asyncio
async def test_immediate_poll_transient_failure_enables_temporary(timers) -> None:
    poll = _Poll([httpx.ConnectTimeout("slow")])
    gate = _comment_gate(timers, _Probe(1), poll)
    await gate.start()

    with pytest.raises(httpx.ConnectTimeout):
        await gate.request_immediate_poll()
    assert gate.mode is GateMode.TEMPORARY_POLL
    assert gate.last_error == "slow"


@pytest.mark.asyncio
async def test_immediate_poll_non_transient_failure_keeps_mode(timers) -> None:
    poll = _Poll([ValueError("bad payload")])
    gate = _comment_gate(timers, _Probe(1), poll)
    await gate.start()

    with pytest.raises(ValueError):
        await gate.request_immediate_poll()
    assert gate.mode is GateMode.PUSH_ACTIVE


@pytest.mark.asyncio
async def test_timer_tick_skips_while_exclusive_work_runs(timers) -> None:
    poll = _Poll()
    gate = _comment_gate(timers, _Probe(None), poll)
    await gate.start()

    release = asyncio.Event()
    entered = asyncio.Event()

    async def _work() -> str:
        entered.set()
        await release.wait()
        return "done"

    task = asyncio.create_task(gate.run_exclusive(_work))
    await entered.wait()
    await timers.fire("previews-poll")
    assert poll.calls == 0

    release.set()
    assert await task == "done"
    await timers.fire("previews-poll")
    assert poll.calls == 1


@pytest.mark.asyncio
async def test_stop_cancels_every_timer(timers) -> None:
    gate = _comment_gate(timers, _Probe(None), _Poll())
    await gate.start()
    gate.stop()
    assert all(t.cancelled for t in timers.timers if t.kind == "every")
    assert gate.mode is GateMode.IDLE
