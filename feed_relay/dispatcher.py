from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

import structlog

from feed_relay.chat.base import ChannelInfo, ChatPlatform
from feed_relay.chat.crosspost import Crossposter
from feed_relay.errors import PlatformError, PlatformErrorKind
from feed_relay.models import Incident, Subscription, TrackedIncident
from feed_relay.reconcile import CreateIncident, EditIncident, FinalizeIncident, IncidentAction, latest_update_id
from feed_relay.render import MessagePayload, render_incident
from feed_relay.store import RelayStore


logger = structlog.get_logger(__name__)

FetchFinal = Callable[[str], Awaitable["Incident | None"]]
MentionFor = Callable[[Incident], "str | None"]


@dataclass
class DispatchResult:
    created: int = 0
    edited: int = 0
    finalized: int = 0
    untracked: int = 0
    failed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.edited or self.untracked)

    @property
    def applied(self) -> int:
        return self.created + self.edited + self.finalized


class MessageDispatcher:
    """Applies reconciliation actions to the chat platform and the subscription record.

    Messages are sent or edited before the subscription is written back, and the
    write only happens when tracked state actually changed.
    """

    def __init__(
        self,
        platform: ChatPlatform,
        store: RelayStore,
        *,
        crossposter: Crossposter | None = None,
        page_base_url: str = "https://discordstatus.com",
    ) -> None:
        self.platform = platform
        self.store = store
        self.crossposter = crossposter
        self.page_base_url = page_base_url

    def _render(self, incident: Incident, mention_for: MentionFor) -> MessagePayload:
        return render_incident(incident, page_base_url=self.page_base_url, mention=mention_for(incident))

    async def _maybe_crosspost(self, subscription: Subscription, channel: ChannelInfo, message_id: str) -> None:
        if self.crossposter is not None and subscription.auto_publish and channel.is_announcement:
            await self.crossposter.crosspost(channel.id, message_id)

    async def apply_incident_actions(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        actions: Iterable[IncidentAction],
        *,
        fetch_final: FetchFinal,
        mention_for: MentionFor,
    ) -> DispatchResult:
        result = DispatchResult()
        for action in actions:
            try:
                if isinstance(action, CreateIncident):
                    await self._create(subscription, channel, action, mention_for, result)
                elif isinstance(action, EditIncident):
                    await self._edit(subscription, channel, action, mention_for, result)
                elif isinstance(action, FinalizeIncident):
                    await self._finalize(subscription, channel, action, fetch_final, mention_for, result)
            except Exception as exc:
                result.failed += 1
                logger.error(
                    "Incident action failed",
                    action=type(action).__name__,
                    subscription_id=subscription.id,
                    channel_id=channel.id,
                    error=str(exc),
                )

        if result.changed:
            try:
                await asyncio.to_thread(self.store.upsert_subscription, subscription)
            except sqlite3.Error as exc:
                logger.error("Failed to persist subscription", subscription_id=subscription.id, error=str(exc))
        return result

    async def _create(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        action: CreateIncident,
        mention_for: MentionFor,
        result: DispatchResult,
    ) -> None:
        incident = action.incident
        if subscription.tracked(incident.id) is not None:
            return
        message_id = await self.platform.send(channel.id, self._render(incident, mention_for))
        subscription.incidents.append(
            TrackedIncident(
                incident_id=incident.id,
                message_id=message_id,
                last_updated_at=incident.updated_at,
                last_update_id=action.initial_update_id,
            )
        )
        result.created += 1
        logger.info("New incident posted", incident_id=incident.id, channel_id=channel.id, message_id=message_id)
        await self._maybe_crosspost(subscription, channel, message_id)

    async def _edit(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        action: EditIncident,
        mention_for: MentionFor,
        result: DispatchResult,
    ) -> None:
        tracked = subscription.tracked(action.tracked.incident_id)
        if tracked is None or not tracked.message_id:
            return
        try:
            await self.platform.edit(channel.id, tracked.message_id, self._render(action.incident, mention_for))
        except PlatformError as exc:
            if exc.kind is PlatformErrorKind.NOT_FOUND:
                subscription.untrack(tracked.incident_id)
                result.untracked += 1
                logger.info("Tracked message is gone, untracking", incident_id=tracked.incident_id, channel_id=channel.id)
                return
            raise
        tracked.last_update_id = action.latest_update_id
        tracked.last_updated_at = action.incident.updated_at
        result.edited += 1
        logger.info("Incident message updated", incident_id=tracked.incident_id, channel_id=channel.id)

    async def _finalize(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        action: FinalizeIncident,
        fetch_final: FetchFinal,
        mention_for: MentionFor,
        result: DispatchResult,
    ) -> None:
        tracked = action.tracked
        try:
            if tracked.message_id:
                final = await fetch_final(tracked.incident_id)
                if final is not None:
                    await self.platform.edit(channel.id, tracked.message_id, self._render(final, mention_for))
        except Exception as exc:
            logger.warning("Final incident render failed", incident_id=tracked.incident_id, error=str(exc))
        finally:
            subscription.untrack(tracked.incident_id)
            result.finalized += 1
            result.untracked += 1
        logger.info("Incident resolved, untracked", incident_id=tracked.incident_id, channel_id=channel.id)

    async def deliver_comment(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        comment_id: int,
        payload: MessagePayload,
    ) -> bool:
        """Send one comment and move the subscription's cursor past it."""
        message_id = await self.platform.send(channel.id, payload)
        await self._maybe_crosspost(subscription, channel, message_id)
        subscription.last_comment_id = max(int(subscription.last_comment_id or 0), int(comment_id))
        try:
            await asyncio.to_thread(self.store.save_subscription_cursor, subscription.id, comment_id)
        except sqlite3.Error as exc:
            logger.error("Failed to persist comment cursor", subscription_id=subscription.id, error=str(exc))
        logger.info("Comment delivered", comment_id=comment_id, channel_id=channel.id, message_id=message_id)
        return True

    async def repost_incident(
        self,
        subscription: Subscription,
        channel: ChannelInfo,
        incident: Incident,
        mention: str | None,
    ) -> str:
        """Post `incident` as a new message and move its tracking to that message."""
        message_id = await self.platform.send(
            channel.id, render_incident(incident, page_base_url=self.page_base_url, mention=mention)
        )
        await self._maybe_crosspost(subscription, channel, message_id)
        tracked = subscription.tracked(incident.id)
        if tracked is None:
            subscription.incidents.append(
                TrackedIncident(
                    incident_id=incident.id,
                    message_id=message_id,
                    last_updated_at=incident.updated_at,
                    last_update_id=latest_update_id(incident),
                )
            )
        else:
            tracked.message_id = message_id
            tracked.last_updated_at = incident.updated_at
            tracked.last_update_id = latest_update_id(incident)
        await asyncio.to_thread(self.store.upsert_subscription, subscription)
        logger.info("Incident recalled", incident_id=incident.id, channel_id=channel.id, message_id=message_id)
        return message_id
