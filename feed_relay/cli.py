from __future__ import annotations

import argparse
import asyncio
import json
from typing import Optional, Sequence

import structlog
import uvicorn

from feed_relay.config import RelayConfig, load_config
from feed_relay.errors import RelayError
from feed_relay.logging_setup import configure_logging
from feed_relay.models import FeedKind
from feed_relay.service import RelayService


logger = structlog.get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feed-relay", description="Relay status incidents and commit comments to chat channels")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $FEED_RELAY_CONFIG or config/feed-relay.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the webhook server with both delivery gates")

    p_poll = sub.add_parser("poll", help="Run a single reconciliation pass and exit")
    p_poll.add_argument("feed", choices=[f.value for f in FeedKind])

    p_hist = sub.add_parser("history", help="Print recent incidents and maintenances")
    p_hist.add_argument("--pages", type=int, default=1, help="Pages to fetch per endpoint")
    p_hist.add_argument("--limit", type=int, default=20, help="Max rows to print")

    sub.add_parser("list", help="List subscriptions")

    p_subscribe = sub.add_parser("subscribe", help="Subscribe a channel to a feed")
    p_subscribe.add_argument("--guild", required=True)
    p_subscribe.add_argument("--channel", required=True)
    p_subscribe.add_argument("--feed", required=True, choices=[f.value for f in FeedKind])
    p_subscribe.add_argument("--auto-publish", action="store_true", help="Crosspost messages in announcement channels")

    p_unsub = sub.add_parser("unsubscribe", help="Remove a subscription")
    p_unsub.add_argument("subscription_id")

    p_recall = sub.add_parser("recall", help="Re-post an incident or comment into a subscription's channel")
    p_recall.add_argument("feed", choices=[f.value for f in FeedKind])
    p_recall.add_argument("subscription_id")
    p_recall.add_argument("item_id", help="Incident id (status) or commit comment id (previews)")

    p_token = sub.add_parser("add-token", help="Add a GitHub token to the pool")
    p_token.add_argument("token")

    p_role = sub.add_parser("set-role", help="Map a mention key to a role (omit --role to remove)")
    p_role.add_argument("--guild", required=True)
    p_role.add_argument("--feed", required=True, choices=[f.value for f in FeedKind])
    p_role.add_argument("--key", required=True, help="<subscription id>:<universal|category|kind|impact>")
    p_role.add_argument("--role", default=None)
    return parser


def _serve(config: RelayConfig) -> int:
    from feed_relay.webhooks import create_app

    app = create_app(RelayService(config))
    uvicorn.run(app, host=config.webhooks.host, port=int(config.webhooks.port), log_level="info")
    return 0


async def _poll(config: RelayConfig, feed: FeedKind) -> int:
    service = RelayService(config)
    try:
        service.store.ensure_schema()
        service.pool.initialize_from_env(config.previews.tokens)
        processed = await service.poll(feed)
    finally:
        await service.stop()
    print(json.dumps({"feed": feed.value, "processed": processed}))
    return 0


async def _history(config: RelayConfig, pages: int, limit: int) -> int:
    service = RelayService(config)
    try:
        incidents = await service.statuspage.fetch_history(page_limit=pages)
    finally:
        await service.stop()
    for incident in incidents[: max(0, limit)]:
        kind = "maintenance" if incident.is_maintenance else "incident"
        print(f"{incident.created_at or '-'}  {incident.id}  [{kind}/{incident.status}]  {incident.name}")
    return 0


async def _recall(config: RelayConfig, feed: FeedKind, subscription_id: str, item_id: str) -> int:
    service = RelayService(config)
    try:
        service.store.ensure_schema()
        if feed is FeedKind.STATUS:
            message_id = await service.recall_status(subscription_id, item_id)
        else:
            service.pool.initialize_from_env(config.previews.tokens)
            message_id = await service.recall_comment(subscription_id, int(item_id))
    except (RelayError, ValueError) as exc:
        logger.error("Recall failed", feed=feed.value, subscription_id=subscription_id, error=str(exc))
        return 1
    finally:
        await service.stop()
    print(message_id)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config.log_level)

    if args.command == "serve":
        return _serve(config)
    if args.command == "poll":
        return asyncio.run(_poll(config, FeedKind(args.feed)))
    if args.command == "history":
        return asyncio.run(_history(config, args.pages, args.limit))
    if args.command == "recall":
        return asyncio.run(_recall(config, FeedKind(args.feed), args.subscription_id, args.item_id))

    service = RelayService(config)
    service.store.ensure_schema()
    try:
        if args.command == "list":
            for s in service.store.find_subscriptions():
                print(f"{s.id}  {s.feed.value:<8}  guild={s.guild_id}  channel={s.channel_id}  cursor={s.last_comment_id}")
        elif args.command == "subscribe":
            created = service.subscribe(
                guild_id=args.guild,
                channel_id=args.channel,
                feed=FeedKind(args.feed),
                auto_publish=bool(args.auto_publish),
            )
            print(created.id)
        elif args.command == "unsubscribe":
            if not service.unsubscribe(args.subscription_id):
                print(f"subscription {args.subscription_id} not found")
                return 1
        elif args.command == "add-token":
            added = service.store.add_credential(args.token)
            print("added" if added else "already present")
        elif args.command == "set-role":
            changed = service.set_role_mention(guild_id=args.guild, feed=FeedKind(args.feed), key=args.key, role_id=args.role)
            print("ok" if changed else "no change")
    except RelayError as exc:
        logger.error("Command failed", command=args.command, error=str(exc))
        return 1
    finally:
        asyncio.run(service.stop())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
