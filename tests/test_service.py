from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest

from feed_relay.config import RelayConfig
from feed_relay.errors import NotFoundError
from feed_relay.models import FeedKind
from feed_relay.service import RelayService


@pytest.fixture()
def service(tmp_path: Path, platform, timers) -> Iterator[RelayService]:
    svc = RelayService(RelayConfig(db_path=str(tmp_path / "relay.db")), platform=platform, scheduler=timers)
    svc.store.ensure_schema()
    yield svc
    asyncio.run(svc.http.aclose())


class _Calls:
    def __init__(self, result: Any = 0) -> None:
        self.result = result
        self.args: list[tuple[Any, ...]] = []

    async def __call__(self, *args: Any) -> Any:
        self.args.append(args)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.mark.asyncio
async def test_created_commit_comment_is_processed(
    service: RelayService, monkeypatch: pytest.MonkeyPatch, comment_json: Callable[..., dict]
) -> None:
    process = _Calls(True)
    monkeypatch.setattr(service.comment_pipeline, "process_single", process)
    comment = comment_json(321)

    await service.handle_github_event("commit_comment", {"action": "created", "comment": comment})
    await service.handle_github_event("commit_comment", {"action": "deleted", "comment": comment})
    await service.handle_github_event("commit_comment", {"action": "created"})

    assert process.args == [(comment,)]
    assert not service.comment_gate.temporary_polling


@pytest.mark.asyncio
async def test_push_event_runs_an_immediate_poll(service: RelayService) -> None:
    poll = _Calls(2)
    service.comment_gate.poll_fn = poll

    await service.handle_github_event("push", {"ref": "refs/heads/master"})

    assert len(poll.args) == 1
    assert service.comment_gate.last_poll_count == 2


@pytest.mark.asyncio
async def test_failed_comment_processing_enables_temporary_polling(
    service: RelayService, monkeypatch: pytest.MonkeyPatch, comment_json: Callable[..., dict], timers
) -> None:
    monkeypatch.setattr(service.comment_pipeline, "process_single", _Calls(RuntimeError("boom")))

    await service.handle_github_event("commit_comment", {"action": "created", "comment": comment_json(5)})

    assert service.comment_gate.temporary_polling
    assert len(timers.active("previews-temporary")) == 1


@pytest.mark.asyncio
async def test_failed_push_poll_enables_temporary_polling(service: RelayService) -> None:
    service.comment_gate.poll_fn = _Calls(httpx.ConnectError("down"))

    await service.handle_github_event("push", {})

    assert service.comment_gate.temporary_polling


@pytest.mark.asyncio
async def test_status_push_records_and_runs_pass(service: RelayService) -> None:
    poll = _Calls(3)
    service.status_gate.poll_fn = poll

    assert await service.on_push(FeedKind.STATUS) == 3
    assert len(poll.args) == 1
    assert service.status_gate.policy.last_push_at is not None  # type: ignore[attr-defined]
    assert not service.status_gate.temporary_polling

    service.status_gate.poll_fn = _Calls(RuntimeError("bad payload"))
    assert await service.on_push(FeedKind.STATUS) == 0
    assert service.status_gate.temporary_polling


@pytest.mark.asyncio
async def test_recall_rejects_unknown_or_mismatched_subscriptions(service: RelayService) -> None:
    previews = service.subscribe(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS)

    with pytest.raises(NotFoundError) as excinfo:
        await service.recall_status("missing", "inc-1")
    assert excinfo.value.what == "subscription"

    with pytest.raises(NotFoundError) as excinfo:
        await service.recall_status(previews.id, "inc-1")
    assert excinfo.value.what == "subscription"


@pytest.mark.asyncio
async def test_recall_comment_goes_through_pipeline(service: RelayService, monkeypatch: pytest.MonkeyPatch) -> None:
    sub = service.subscribe(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS)
    recall = _Calls("m-9")
    monkeypatch.setattr(service.comment_pipeline, "recall", recall)

    assert await service.recall_comment(sub.id, 77) == "m-9"
    assert [(s.id, cid) for s, cid in recall.args] == [(sub.id, 77)]
