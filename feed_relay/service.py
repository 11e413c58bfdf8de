"""Wires the stores, source clients, gates and pipelines into one runnable relay."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from feed_relay import __version__
from feed_relay.chat.base import ChatPlatform
from feed_relay.chat.crosspost import Crossposter
from feed_relay.chat.discord import DiscordRestPlatform
from feed_relay.config import RelayConfig
from feed_relay.dispatcher import MessageDispatcher
from feed_relay.errors import NotFoundError
from feed_relay.gate import DeliveryGate, GateSettings, InstallationProbePolicy, SilenceTimeoutPolicy
from feed_relay.models import FeedKind, Subscription
from feed_relay.pipelines import CommentFeedPipeline, StatusFeedPipeline, cleanup_orphans
from feed_relay.scheduling import RelayScheduler, ScheduledJob
from feed_relay.sources.credentials import CredentialPool
from feed_relay.sources.github import CommentDiscovery, GitHubClient, GitHubSettings
from feed_relay.sources.github_app import GitHubAppProbe, load_private_key
from feed_relay.sources.statuspage import StatusPageClient, StatusPageSettings
from feed_relay.store import RelayStore


logger = structlog.get_logger(__name__)


class RelayService:
    def __init__(
        self,
        config: RelayConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        platform: ChatPlatform | None = None,
        scheduler: RelayScheduler | None = None,
    ) -> None:
        self.config = config
        self.store = RelayStore(config.db_path)
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            headers={"User-Agent": f"feed-relay/{__version__}"},
            follow_redirects=True,
        )

        p = config.previews
        self.pool = CredentialPool(self.store)
        self.github = GitHubClient(
            self.http,
            self.pool,
            GitHubSettings(
                owner=p.owner,
                repo=p.repo,
                api_base_url=p.api_base_url,
                timeout_seconds=p.timeout_seconds,
                max_retries=p.max_retries,
                retry_delay_seconds=p.retry_delay_seconds,
                commits_depth=p.commits_depth,
                max_event_pages=p.max_event_pages,
                bootstrap_event_pages=p.bootstrap_event_pages,
                bootstrap_commits_depth=p.bootstrap_commits_depth,
            ),
        )
        self.discovery = CommentDiscovery(self.github)
        self.probe = GitHubAppProbe(
            self.http,
            app_id=p.app_id,
            private_key=load_private_key(p.app_private_key, p.app_private_key_path),
            api_base_url=p.api_base_url,
            timeout_seconds=p.timeout_seconds,
        )

        s = config.status
        self.statuspage = StatusPageClient(
            self.http,
            StatusPageSettings(
                base_url=s.base_url,
                timeout_seconds=s.timeout_seconds,
                max_retries=s.max_retries,
                retry_delay_seconds=s.retry_delay_seconds,
                page_limit=s.page_limit,
            ),
        )

        c = config.chat
        self.platform: ChatPlatform = platform or DiscordRestPlatform(
            self.http,
            bot_token=c.bot_token,
            api_base_url=c.api_base_url,
            timeout_seconds=c.timeout_seconds,
        )
        self.crossposter = Crossposter(self.platform, cooldown_seconds=c.crosspost_cooldown)
        self.dispatcher = MessageDispatcher(
            self.platform, self.store, crossposter=self.crossposter, page_base_url=s.base_url
        )
        self.status_pipeline = StatusFeedPipeline(self.statuspage, self.store, self.platform, self.dispatcher)
        self.comment_pipeline = CommentFeedPipeline(
            self.github,
            self.discovery,
            self.pool,
            self.store,
            self.platform,
            self.dispatcher,
            repo_html_url=f"https://github.com/{p.owner}/{p.repo}",
        )

        g = config.gates
        self.scheduler = scheduler or RelayScheduler()
        self.comment_gate = DeliveryGate(
            FeedKind.PREVIEWS.value,
            self.comment_pipeline.run_pass,
            InstallationProbePolicy(self._probe_installation),
            GateSettings(
                poll_interval=g.comment_poll_interval,
                check_interval=g.comment_recheck_interval,
                temporary_max=g.comment_temporary_max,
                max_empty_polls=g.comment_max_empty_polls,
            ),
            self.scheduler,
        )
        self.status_gate = DeliveryGate(
            FeedKind.STATUS.value,
            self.status_pipeline.run_pass,
            SilenceTimeoutPolicy(g.status_silence_threshold),
            GateSettings(
                poll_interval=g.status_poll_interval,
                check_interval=g.status_health_interval,
                temporary_max=g.status_temporary_max,
            ),
            self.scheduler,
        )
        self._maintenance: list[ScheduledJob] = []
        self.started = False

    async def _probe_installation(self) -> int | None:
        p = self.config.previews
        return await self.probe.is_installed(p.owner, p.repo)

    def gate_for(self, feed: FeedKind) -> DeliveryGate:
        return self.status_gate if feed is FeedKind.STATUS else self.comment_gate

    # --- lifecycle ---

    async def start(self) -> None:
        if self.started:
            return
        self.store.ensure_schema()
        added = self.pool.initialize_from_env(self.config.previews.tokens)
        if added:
            logger.info("Registered GitHub tokens", added=added)

        self.scheduler.start()
        c = self.config.chat
        self._maintenance = [
            self.scheduler.every(c.orphan_cleanup_interval, self._orphan_cleanup_job, name="orphan-cleanup"),
            self.scheduler.every(c.crosspost_retry_interval, self._crosspost_retry_job, name="crosspost-retry"),
        ]
        await self.comment_gate.start()
        await self.status_gate.start()
        self.started = True
        logger.info("Relay started", db_path=self.config.db_path, app_configured=self.probe.configured)

    async def stop(self) -> None:
        self.comment_gate.stop()
        self.status_gate.stop()
        for job in self._maintenance:
            job.cancel()
        self._maintenance = []
        self.scheduler.stop()
        if self._owns_http:
            await self.http.aclose()
        self.started = False
        logger.info("Relay stopped")

    async def _orphan_cleanup_job(self) -> None:
        try:
            removed = await cleanup_orphans(self.store, self.platform)
        except Exception as exc:
            logger.error("Orphan cleanup failed", error=str(exc))
            return
        if removed:
            logger.info("Orphan cleanup finished", removed=removed)

    async def _crosspost_retry_job(self) -> None:
        if not self.crossposter.pending_count():
            return
        try:
            published = await self.crossposter.retry_pending()
        except Exception as exc:
            logger.error("Crosspost retry failed", error=str(exc))
            return
        logger.info("Crosspost retry finished", published=published, pending=self.crossposter.pending_count())

    # --- inbound signals ---

    async def poll(self, feed: FeedKind) -> int:
        return await self.gate_for(feed).request_immediate_poll()

    async def on_push(self, feed: FeedKind) -> int:
        """A verified push for `feed` arrived: record it, then run one pass."""
        gate = self.gate_for(feed)
        gate.push_received()
        try:
            return int(await gate.run_exclusive(gate.poll_fn) or 0)
        except Exception as exc:
            gate.handle_processing_error(exc)
            return 0

    async def handle_github_event(self, event: str, payload: dict[str, Any]) -> None:
        gate = self.comment_gate
        try:
            if event == "commit_comment":
                comment = payload.get("comment")
                if payload.get("action") != "created" or not isinstance(comment, dict):
                    return
                gate.push_received()
                logger.info("Commit comment webhook received", comment_id=comment.get("id"))
                await gate.run_exclusive(lambda: self.comment_pipeline.process_single(comment))
            elif event == "push":
                gate.push_received()
                await gate.request_immediate_poll()
            elif event == "ping":
                logger.info("GitHub webhook ping received", zen=payload.get("zen"))
            else:
                logger.debug("Ignoring GitHub event", event=event)
        except Exception as exc:
            gate.handle_processing_error(exc)

    # --- administration ---

    def subscribe(self, *, guild_id: str, channel_id: str, feed: FeedKind, auto_publish: bool = False) -> Subscription:
        """Create a subscription. New previews subscriptions start at the global checkpoint."""
        last_comment_id = self.store.get_checkpoint() if feed is FeedKind.PREVIEWS else None
        sub = self.store.create_subscription(
            guild_id=guild_id,
            channel_id=channel_id,
            feed=feed,
            auto_publish=auto_publish,
            last_comment_id=last_comment_id,
        )
        logger.info("Subscription created", subscription_id=sub.id, feed=feed.value, channel_id=channel_id)
        return sub

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = self.store.delete_subscription(subscription_id)
        if removed:
            logger.info("Subscription removed", subscription_id=subscription_id)
        return removed

    def set_role_mention(self, *, guild_id: str, feed: FeedKind, key: str, role_id: str | None) -> bool:
        if role_id is None:
            return self.store.remove_role_mention(guild_id=guild_id, feed=feed, key=key)
        self.store.set_role_mention(guild_id=guild_id, feed=feed, key=key, role_id=role_id)
        return True

    async def cleanup_orphans(self) -> int:
        return await cleanup_orphans(self.store, self.platform)

    async def _subscription(self, subscription_id: str, feed: FeedKind) -> Subscription:
        sub = await asyncio.to_thread(self.store.find_subscription, subscription_id)
        if sub is None or sub.feed is not feed:
            raise NotFoundError("subscription", subscription_id)
        return sub

    async def recall_status(self, subscription_id: str, incident_id: str) -> str:
        """Re-post an incident into a status subscription's channel; returns the new message id."""
        sub = await self._subscription(subscription_id, FeedKind.STATUS)
        return await self.status_gate.run_exclusive(lambda: self.status_pipeline.recall(sub, incident_id))

    async def recall_comment(self, subscription_id: str, comment_id: int) -> str:
        sub = await self._subscription(subscription_id, FeedKind.PREVIEWS)
        return await self.comment_pipeline.recall(sub, comment_id)

    def health(self) -> dict[str, Any]:
        credentials = self.store.list_credentials()
        return {
            "ok": self.started,
            "gates": {g.name: g.snapshot() for g in (self.comment_gate, self.status_gate)},
            "scheduler_jobs": self.scheduler.job_names(),
            "pending_crossposts": self.crossposter.pending_count(),
            "credentials": {
                "total": len(credentials),
                "active": sum(1 for cr in credentials if cr.is_active),
            },
        }
