"""Feed pipelines: one reconciliation pass per feed, plus orphan cleanup."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Iterable

import structlog

from feed_relay.chat.base import ChannelInfo, ChatPlatform
from feed_relay.dispatcher import MessageDispatcher
from feed_relay.errors import CheckpointExistsError, NoCredentialsError, NotFoundError, SourceApiError
from feed_relay.models import CommitComment, FeedKind, Incident, RoleMention, Subscription
from feed_relay.reconcile import comments_to_deliver, plan_incident_actions
from feed_relay.render import (
    MessagePayload,
    collect_attachments,
    comment_mention,
    inline_attachment_urls,
    parse_sections,
    render_commit_comment,
    status_mention,
    status_mention_keys,
)
from feed_relay.sources.credentials import CredentialPool
from feed_relay.sources.github import CommentDiscovery, GitHubClient
from feed_relay.sources.statuspage import StatusPageClient
from feed_relay.store import RelayStore


logger = structlog.get_logger(__name__)

NO_CREDENTIALS_WARN_SECONDS = 60


class StatusFeedPipeline:
    def __init__(
        self,
        source: StatusPageClient,
        store: RelayStore,
        platform: ChatPlatform,
        dispatcher: MessageDispatcher,
    ) -> None:
        self.source = source
        self.store = store
        self.platform = platform
        self.dispatcher = dispatcher

    async def run_pass(self, active: list[Incident] | None = None) -> int:
        """Reconcile every status subscription against the active incident set.

        Fetch errors propagate so the caller can classify them. Failures inside
        one subscription are logged and do not stop the others.
        """
        subscriptions = await asyncio.to_thread(self.store.find_subscriptions, feed=FeedKind.STATUS)
        if not subscriptions:
            return 0
        if active is None:
            active = await self.source.fetch_active()

        applied = 0
        for sub in subscriptions:
            try:
                applied += await self._reconcile_subscription(sub, active)
            except Exception as exc:
                logger.error("Status subscription pass failed", subscription_id=sub.id, error=str(exc))
        logger.info("Status pass finished", subscriptions=len(subscriptions), active=len(active), applied=applied)
        return applied

    async def _mention_for(self, sub: Subscription) -> Callable[[Incident], str | None]:
        roles = await asyncio.to_thread(self.store.find_role_mentions, guild_id=sub.guild_id, feed=FeedKind.STATUS)

        def mention_for(incident: Incident) -> str | None:
            return status_mention(status_mention_keys(sub.id, incident), roles)

        return mention_for

    async def _reconcile_subscription(self, sub: Subscription, active: list[Incident]) -> int:
        channel = await self.platform.get_channel(sub.channel_id)
        if channel is None:
            logger.warning("Status channel not found, skipping", subscription_id=sub.id, channel_id=sub.channel_id)
            return 0
        actions = plan_incident_actions(active, sub.incidents)
        if not actions:
            return 0
        result = await self.dispatcher.apply_incident_actions(
            sub,
            channel,
            actions,
            fetch_final=self.source.fetch_incident,
            mention_for=await self._mention_for(sub),
        )
        return result.applied

    async def recall(self, sub: Subscription, incident_id: str) -> str:
        """Re-post one incident (current or historical) and track the new message."""
        channel = await self.platform.get_channel(sub.channel_id)
        if channel is None:
            raise NotFoundError("channel", sub.channel_id)
        try:
            incident = await self.source.fetch_incident(incident_id)
        except SourceApiError as exc:
            if exc.status == 404:
                raise NotFoundError("incident", incident_id) from exc
            raise
        if incident is None:
            raise NotFoundError("incident", incident_id)
        mention_for = await self._mention_for(sub)
        return await self.dispatcher.repost_incident(sub, channel, incident, mention_for(incident))


class CommentFeedPipeline:
    def __init__(
        self,
        github: GitHubClient,
        discovery: CommentDiscovery,
        pool: CredentialPool,
        store: RelayStore,
        platform: ChatPlatform,
        dispatcher: MessageDispatcher,
        *,
        repo_html_url: str,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.github = github
        self.discovery = discovery
        self.pool = pool
        self.store = store
        self.platform = platform
        self.dispatcher = dispatcher
        self.repo_html_url = repo_html_url
        self._clock = clock
        self._last_no_credentials_warning: float | None = None

    def _warn_no_credentials(self) -> None:
        now = self._clock()
        last = self._last_no_credentials_warning
        if last is None or now - last >= NO_CREDENTIALS_WARN_SECONDS:
            self._last_no_credentials_warning = now
            logger.warning("No usable GitHub credentials, skipping previews pass")

    async def bootstrap(self) -> int | None:
        """Seed the global checkpoint with the newest comment id currently visible.

        Scan failures propagate and leave the checkpoint unset, so the next
        pass bootstraps again.
        """
        start = await self.discovery.scan_max_comment_id()
        try:
            await asyncio.to_thread(self.store.create_checkpoint, start)
        except CheckpointExistsError:
            logger.info("Checkpoint created concurrently, continuing")
            return await asyncio.to_thread(self.store.get_checkpoint)
        logger.info("Initial checkpoint created", checkpoint=start)
        return start

    async def run_pass(self) -> int:
        if not await asyncio.to_thread(self.pool.has_available):
            self._warn_no_credentials()
            return 0

        checkpoint = await asyncio.to_thread(self.store.get_checkpoint)
        if checkpoint is None:
            await self.bootstrap()
            return 0

        comments = await self.discovery.discover(checkpoint)
        if not comments:
            return 0

        processed = 0
        channels: dict[str, ChannelInfo | None] = {}
        for comment in comments:
            try:
                await self._deliver_everywhere(comment, channels)
            except NoCredentialsError:
                self._warn_no_credentials()
                break
            await asyncio.to_thread(self.store.advance_checkpoint_if_greater, comment.id)
            processed += 1
        logger.info("Previews pass finished", discovered=len(comments), processed=processed)
        return processed

    async def process_single(self, payload_comment: dict[str, Any]) -> bool:
        """Handle a comment announced by a webhook.

        The comment is re-fetched for its full body and attachments; the push
        payload is used as-is when that fails.
        """
        comment = CommitComment.from_json(payload_comment)
        if comment.url:
            try:
                comment = await self.github.get_comment(comment.url)
            except Exception as exc:
                logger.warning("Comment re-fetch failed, using webhook payload", comment_id=comment.id, error=str(exc))
        delivered = await self._deliver_everywhere(comment, {})
        await asyncio.to_thread(self.store.advance_checkpoint_if_greater, comment.id)
        return delivered > 0

    async def recall(self, sub: Subscription, comment_id: int) -> str:
        """Re-post one comment to a subscription. Cursors are left alone."""
        channel = await self.platform.get_channel(sub.channel_id)
        if channel is None:
            raise NotFoundError("channel", sub.channel_id)
        try:
            comment = await self.github.get_comment_by_id(comment_id)
        except SourceApiError as exc:
            if exc.status == 404:
                raise NotFoundError("comment", str(comment_id)) from exc
            raise
        sections = parse_sections(comment.body)
        payload = await self._render_for(sub, comment, sections, await self._download_inline(comment), is_new=False)
        message_id = await self.platform.send(channel.id, payload)
        logger.info("Comment recalled", comment_id=comment.id, channel_id=channel.id, message_id=message_id)
        return message_id

    async def _download_inline(self, comment: CommitComment) -> dict[str, tuple[bytes, str | None]]:
        downloads: dict[str, tuple[bytes, str | None]] = {}
        for url in inline_attachment_urls(comment, collect_attachments(comment)):
            got = await self.github.download(url)
            if got is not None:
                downloads[url] = got
        return downloads

    async def _channel(self, channel_id: str, cache: dict[str, ChannelInfo | None]) -> ChannelInfo | None:
        if channel_id not in cache:
            cache[channel_id] = await self.platform.get_channel(channel_id)
        return cache[channel_id]

    async def _render_for(
        self,
        sub: Subscription,
        comment: CommitComment,
        sections: list,
        downloads: dict[str, tuple[bytes, str | None]],
        *,
        is_new: bool = True,
    ) -> MessagePayload:
        roles = await asyncio.to_thread(self.store.find_role_mentions, guild_id=sub.guild_id, feed=FeedKind.PREVIEWS)
        return render_commit_comment(
            comment,
            repo_html_url=self.repo_html_url,
            sections=sections,
            mention=comment_mention(_roles_for(sub, roles), sections),
            downloads=downloads,
            is_new=is_new,
        )

    async def _deliver_everywhere(self, comment: CommitComment, channels: dict[str, ChannelInfo | None]) -> int:
        subscriptions = await asyncio.to_thread(self.store.find_subscriptions, feed=FeedKind.PREVIEWS)
        targets = [s for s in subscriptions if comments_to_deliver([comment], s.last_comment_id)]
        if not targets:
            return 0

        sections = parse_sections(comment.body)
        downloads = await self._download_inline(comment)
        delivered = 0
        for sub in targets:
            try:
                channel = await self._channel(sub.channel_id, channels)
                if channel is None:
                    logger.warning("Previews channel not found, skipping", subscription_id=sub.id, channel_id=sub.channel_id)
                    continue
                payload = await self._render_for(sub, comment, sections, downloads)
                await self.dispatcher.deliver_comment(sub, channel, comment.id, payload)
                delivered += 1
            except Exception as exc:
                logger.error(
                    "Comment delivery failed",
                    comment_id=comment.id,
                    subscription_id=sub.id,
                    channel_id=sub.channel_id,
                    error=str(exc),
                )
        return delivered


def _roles_for(sub: Subscription, roles: Iterable[RoleMention]) -> list[RoleMention]:
    prefix = f"{sub.id}:"
    return [r for r in roles if r.key.startswith(prefix)]


async def cleanup_orphans(store: RelayStore, platform: ChatPlatform) -> int:
    """Delete subscriptions whose channel no longer exists."""
    removed = 0
    for sub in await asyncio.to_thread(store.find_subscriptions):
        try:
            channel = await platform.get_channel(sub.channel_id)
        except Exception as exc:
            logger.warning("Channel lookup failed during cleanup", channel_id=sub.channel_id, error=str(exc))
            continue
        if channel is None and await asyncio.to_thread(store.delete_subscription, sub.id):
            removed += 1
            logger.info("Removed orphaned subscription", subscription_id=sub.id, channel_id=sub.channel_id)
    return removed
