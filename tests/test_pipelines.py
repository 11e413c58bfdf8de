from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from feed_relay.dispatcher import MessageDispatcher
from feed_relay.errors import NoCredentialsError, NotFoundError, PlatformError, PlatformErrorKind, SourceApiError
from feed_relay.models import CommitComment, FeedKind, Incident
from feed_relay.pipelines import CommentFeedPipeline, StatusFeedPipeline, cleanup_orphans
from feed_relay.reconcile import merge_comment_batches
from feed_relay.render import TextBlock
from feed_relay.sources.credentials import CredentialPool
from feed_relay.sources.github import CommentDiscovery, GitHubClient, GitHubSettings
from feed_relay.store import RelayStore


REPO = "https://github.com/Discord-Datamining/Discord-Datamining"


class _FakeDiscovery:
    def __init__(self, batches: list[list[CommitComment]], scan_result: int = 0) -> None:
        self.batches = batches
        self.scan_result = scan_result
        self.since: list[int] = []

    async def discover(self, since_id: int) -> list[CommitComment]:
        self.since.append(since_id)
        return merge_comment_batches(*self.batches)

    async def scan_max_comment_id(self) -> int:
        return self.scan_result


class _FakeGitHub:
    def __init__(self) -> None:
        self.comments: dict[str, CommitComment] = {}
        self.by_id: dict[int, CommitComment] = {}
        self.download_error: Exception | None = None
        self.downloads: list[str] = []

    async def get_comment(self, url: str) -> CommitComment:
        if url not in self.comments:
            raise SourceApiError(404, url)
        return self.comments[url]

    async def get_comment_by_id(self, comment_id: int) -> CommitComment:
        if comment_id not in self.by_id:
            raise SourceApiError(404, f"comments/{comment_id}")
        return self.by_id[comment_id]

    async def download(self, url: str) -> tuple[bytes, str | None] | None:
        if self.download_error is not None:
            raise self.download_error
        self.downloads.append(url)
        return b"PNG", "image/png"


class _FakeStatusSource:
    def __init__(self, active: list[Incident], incidents: dict[str, Incident] | None = None) -> None:
        self.active = active
        self.incidents = incidents or {}
        self.fetches = 0

    async def fetch_active(self) -> list[Incident]:
        self.fetches += 1
        return list(self.active)

    async def fetch_incident(self, incident_id: str) -> Incident | None:
        return self.incidents.get(incident_id)


def _c(cid: int, body: str = "## Strings\n- x") -> CommitComment:
    return CommitComment(id=cid, body=body, commit_id="abcdef1234567890")


def _pool(store: RelayStore) -> CredentialPool:
    pool = CredentialPool(store)
    pool.initialize_from_env(["ghp_test_token_1"])
    return pool


def _comment_pipeline(store: RelayStore, platform, discovery: Any, github: Any | None = None) -> CommentFeedPipeline:
    return CommentFeedPipeline(
        github or _FakeGitHub(),
        discovery,
        _pool(store),
        store,
        platform,
        MessageDispatcher(platform, store),
        repo_html_url=REPO,
    )


@pytest.mark.asyncio
async def test_comment_pass_delivers_only_newer_than_cursor(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS, last_comment_id=100)
    platform.add_channel("c1")
    discovery = _FakeDiscovery([[_c(103), _c(98)], [_c(101), _c(103)]])

    processed = await _comment_pipeline(store, platform, discovery).run_pass()

    assert processed == 3
    assert discovery.since == [100]
    assert len(platform.sent) == 2
    loaded = store.find_subscription(sub.id)
    assert loaded is not None and loaded.last_comment_id == 103
    assert store.get_checkpoint() == 103


@pytest.mark.asyncio
async def test_comment_pass_bootstraps_checkpoint_without_delivering(store: RelayStore, platform) -> None:
    store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS)
    platform.add_channel("c1")
    discovery = _FakeDiscovery([[_c(400)]], scan_result=500)

    assert await _comment_pipeline(store, platform, discovery).run_pass() == 0
    assert store.get_checkpoint() == 500
    assert platform.sent == []
    assert discovery.since == []


@pytest.mark.asyncio
async def test_comment_pass_skips_without_credentials(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    discovery = _FakeDiscovery([[_c(101)]])
    pipeline = _comment_pipeline(store, platform, discovery)
    store.deactivate_credential("ghp_test_token_1")

    assert await pipeline.run_pass() == 0
    assert discovery.since == []


@pytest.mark.asyncio
async def test_one_failing_subscription_does_not_block_others(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    broken = store.create_subscription(guild_id="g1", channel_id="bad", feed=FeedKind.PREVIEWS, last_comment_id=100)
    ok = store.create_subscription(guild_id="g1", channel_id="good", feed=FeedKind.PREVIEWS, last_comment_id=100)
    platform.add_channel("bad")
    platform.add_channel("good")
    platform.send_errors["bad"] = PlatformError(PlatformErrorKind.FORBIDDEN, status=403, code=50013)

    await _comment_pipeline(store, platform, _FakeDiscovery([[_c(101)]])).run_pass()

    assert [c for c, _m, _p in platform.sent] == ["good"]
    assert store.find_subscription(ok.id).last_comment_id == 101  # type: ignore[union-attr]
    assert store.find_subscription(broken.id).last_comment_id == 100  # type: ignore[union-attr]
    assert store.get_checkpoint() == 101


@pytest.mark.asyncio
async def test_running_out_of_credentials_stops_before_checkpoint(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS, last_comment_id=100)
    platform.add_channel("c1")
    github = _FakeGitHub()
    github.download_error = NoCredentialsError("no usable source credential")
    image_comment = _c(101, body="![shot](https://github.com/user-attachments/assets/shot.png)")

    processed = await _comment_pipeline(store, platform, _FakeDiscovery([[image_comment]]), github).run_pass()

    assert processed == 0
    assert platform.sent == []
    assert store.get_checkpoint() == 100


@pytest.mark.asyncio
async def test_process_single_falls_back_to_payload(store: RelayStore, platform, comment_json: Callable[..., dict]) -> None:
    store.create_checkpoint(100)
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS, last_comment_id=100)
    platform.add_channel("c1")
    pipeline = _comment_pipeline(store, platform, _FakeDiscovery([]))

    assert await pipeline.process_single(comment_json(105)) is True
    assert store.get_checkpoint() == 105
    assert store.find_subscription(sub.id).last_comment_id == 105  # type: ignore[union-attr]

    assert await pipeline.process_single(comment_json(104)) is False
    assert len(platform.sent) == 1
    assert store.get_checkpoint() == 105


@pytest.mark.asyncio
async def test_previews_mentions_are_scoped_to_subscription(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS, last_comment_id=100)
    platform.add_channel("c1")
    store.set_role_mention(guild_id="g1", feed=FeedKind.PREVIEWS, key=f"{sub.id}:Strings", role_id="77")
    store.set_role_mention(guild_id="g1", feed=FeedKind.PREVIEWS, key="other-sub:universal", role_id="88")

    await _comment_pipeline(store, platform, _FakeDiscovery([[_c(101)]])).run_pass()

    assert platform.sent[0][2].mention == "<@&77>"


@pytest.mark.asyncio
async def test_status_pass_creates_and_skips_missing_channels(
    store: RelayStore, platform, make_incident: Callable[..., Incident]
) -> None:
    present = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.STATUS)
    store.create_subscription(guild_id="g1", channel_id="deleted", feed=FeedKind.STATUS)
    platform.add_channel("c1")
    store.set_role_mention(guild_id="g1", feed=FeedKind.STATUS, key=f"{present.id}:universal", role_id="5")
    source = _FakeStatusSource([make_incident("inc-1", updates=[("u1", "investigating", "2024-05-01T10:00:00Z")])])
    pipeline = StatusFeedPipeline(source, store, platform, MessageDispatcher(platform, store))

    assert await pipeline.run_pass() == 1
    assert source.fetches == 1
    assert [(c, p.mention) for c, _m, p in platform.sent] == [("c1", "<@&5>")]

    assert await pipeline.run_pass() == 0
    assert len(platform.sent) == 1


@pytest.mark.asyncio
async def test_status_pass_without_subscriptions_skips_fetch(store: RelayStore, platform) -> None:
    source = _FakeStatusSource([])
    pipeline = StatusFeedPipeline(source, store, platform, MessageDispatcher(platform, store))
    assert await pipeline.run_pass() == 0
    assert source.fetches == 0


@pytest.mark.asyncio
async def test_cleanup_orphans_removes_missing_channels(store: RelayStore, platform) -> None:
    keep = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.STATUS)
    store.create_subscription(guild_id="g1", channel_id="deleted", feed=FeedKind.PREVIEWS)
    platform.add_channel("c1")

    assert await cleanup_orphans(store, platform) == 1
    assert [s.id for s in store.find_subscriptions()] == [keep.id]


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_failed_bootstrap_scan_retries_on_next_pass(store: RelayStore, platform) -> None:
    store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS)
    platform.add_channel("c1")
    state = {"healthy": False}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if not state["healthy"]:
            return httpx.Response(503, json={})
        if path == "/repos/octo/feed/events":
            event = {"type": "CommitCommentEvent", "payload": {"comment": {"id": 640, "body": "x", "commit_id": "aaa"}}}
            return httpx.Response(200, json=[event])
        if path == "/repos/octo/feed/commits":
            return httpx.Response(200, json=[{"sha": "aaa"}])
        return httpx.Response(200, json=[{"id": 655, "body": "y", "commit_id": "aaa"}])

    pool = _pool(store)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    settings = GitHubSettings(owner="octo", repo="feed", api_base_url="https://api.github.test", max_retries=2)
    github = GitHubClient(http, pool, settings, sleep=_no_sleep)
    pipeline = CommentFeedPipeline(
        github, CommentDiscovery(github), pool, store, platform, MessageDispatcher(platform, store), repo_html_url=REPO
    )

    async with http:
        with pytest.raises(SourceApiError):
            await pipeline.run_pass()
        assert store.get_checkpoint() is None

        state["healthy"] = True
        assert await pipeline.run_pass() == 0

    assert store.get_checkpoint() == 655
    assert platform.sent == []


@pytest.mark.asyncio
async def test_subscription_without_cursor_receives_new_comments(store: RelayStore, platform) -> None:
    store.create_checkpoint(100)
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS)
    platform.add_channel("c1")

    assert await _comment_pipeline(store, platform, _FakeDiscovery([[_c(101)]])).run_pass() == 1

    assert len(platform.sent) == 1
    assert store.find_subscription(sub.id).last_comment_id == 101  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_comment_recall_reposts_without_moving_cursor(store: RelayStore, platform) -> None:
    store.create_checkpoint(300)
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.PREVIEWS, last_comment_id=300)
    platform.add_channel("c1")
    store.set_role_mention(guild_id="g1", feed=FeedKind.PREVIEWS, key=f"{sub.id}:universal", role_id="9")
    github = _FakeGitHub()
    github.by_id[120] = _c(120)
    pipeline = _comment_pipeline(store, platform, _FakeDiscovery([]), github)

    message_id = await pipeline.recall(sub, 120)

    channel_id, sent_id, payload = platform.sent[0]
    assert (channel_id, sent_id) == ("c1", message_id)
    assert payload.mention == "<@&9>"
    assert any("posted a comment:" in b.content for b in payload.blocks if isinstance(b, TextBlock))
    assert store.find_subscription(sub.id).last_comment_id == 300  # type: ignore[union-attr]
    assert store.get_checkpoint() == 300

    with pytest.raises(NotFoundError) as excinfo:
        await pipeline.recall(sub, 999)
    assert excinfo.value.what == "comment"


@pytest.mark.asyncio
async def test_status_recall_posts_new_message_and_tracks_it(
    store: RelayStore, platform, make_incident: Callable[..., Incident]
) -> None:
    sub = store.create_subscription(guild_id="g1", channel_id="c1", feed=FeedKind.STATUS)
    platform.add_channel("c1")
    old = make_incident(
        "inc-9",
        updates=[("u2", "resolved", "2024-04-02T10:00:00Z"), ("u1", "investigating", "2024-04-01T10:00:00Z")],
    )
    pipeline = StatusFeedPipeline(
        _FakeStatusSource([], {"inc-9": old}), store, platform, MessageDispatcher(platform, store)
    )

    first = await pipeline.recall(sub, "inc-9")
    second = await pipeline.recall(store.find_subscription(sub.id), "inc-9")  # type: ignore[arg-type]

    assert [m for _c, m, _p in platform.sent] == [first, second]
    loaded = store.find_subscription(sub.id)
    assert loaded is not None
    assert [(t.incident_id, t.message_id, t.last_update_id) for t in loaded.incidents] == [("inc-9", second, "u2")]

    with pytest.raises(NotFoundError) as excinfo:
        await pipeline.recall(loaded, "missing")
    assert excinfo.value.what == "incident"
