from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response

from feed_relay import __version__
from feed_relay.errors import NotFoundError, SubscriptionExistsError, SubscriptionLimitError
from feed_relay.models import FeedKind, Subscription
from feed_relay.schema import (
    HealthResponse,
    PollResponse,
    RecallCommentRequest,
    RecallResponse,
    RecallStatusRequest,
    RoleMentionRequest,
    SubscribeRequest,
    SubscriptionResponse,
)
from feed_relay.service import RelayService


logger = structlog.get_logger(__name__)


def verify_github_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Check an `X-Hub-Signature-256` header (`sha256=<hex hmac>`)."""
    if not header or not header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header.strip())


def verify_ed25519_signature(public_key_hex: str, signature_hex: str, timestamp: str, body: bytes) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex.strip()))
        key.verify(bytes.fromhex(signature_hex.strip()), timestamp.encode("utf-8") + body)
    except (InvalidSignature, ValueError):
        return False
    return True


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_service(req: Request) -> RelayService:
    service: Any = getattr(req.app.state, "service", None)
    if not isinstance(service, RelayService):
        raise RuntimeError("Relay service not configured")
    return service


def require_admin(req: Request, service: RelayService = Depends(get_service)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    admin_token = service.config.webhooks.admin_token
    if not admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not hmac.compare_digest(token.strip(), admin_token.strip()):
        raise HTTPException(status_code=403, detail="invalid_admin_token")


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(status_code=400, detail="invalid_json") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="invalid_json")
    return data


def _subscription_response(sub: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=sub.id,
        guild_id=sub.guild_id,
        channel_id=sub.channel_id,
        feed=sub.feed,
        auto_publish=sub.auto_publish,
        last_comment_id=sub.last_comment_id,
        tracked_incidents=len(sub.incidents),
    )


def create_app(service: RelayService, *, manage_lifecycle: bool = True) -> FastAPI:
    app = FastAPI(title="Feed Relay", version=__version__)
    app.state.service = service

    if manage_lifecycle:

        @app.on_event("startup")
        async def _startup() -> None:
            await service.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            await service.stop()

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        return HealthResponse(**(await asyncio.to_thread(service.health)))

    @app.post("/webhook/github")
    async def github_webhook(req: Request, background: BackgroundTasks) -> dict[str, Any]:
        secret = service.config.webhooks.github_secret
        if not secret:
            logger.warning("GitHub webhook secret not configured")
            raise HTTPException(status_code=500, detail="webhook_secret_not_configured")
        body = await req.body()
        signature = req.headers.get("x-hub-signature-256")
        if not signature:
            raise HTTPException(status_code=401, detail="signature_missing")
        if not verify_github_signature(secret, body, signature):
            raise HTTPException(status_code=401, detail="signature_invalid")
        payload = _parse_json(body)
        event = str(req.headers.get("x-github-event") or "")
        background.add_task(service.handle_github_event, event, payload)
        return {"ok": True, "event": event}

    @app.post("/webhook/status")
    async def status_webhook(req: Request, background: BackgroundTasks) -> dict[str, Any]:
        public_key = service.config.webhooks.status_public_key
        if not public_key:
            logger.warning("Status webhook public key not configured")
            raise HTTPException(status_code=500, detail="webhook_public_key_not_configured")
        body = await req.body()
        signature = req.headers.get("x-signature-ed25519")
        timestamp = req.headers.get("x-signature-timestamp")
        if not signature or not timestamp or not body:
            raise HTTPException(status_code=400, detail="signature_timestamp_or_body_missing")
        if not verify_ed25519_signature(public_key, signature, timestamp, body):
            logger.error("Status webhook signature verification failed")
            raise HTTPException(status_code=401, detail="signature_invalid")
        background.add_task(service.on_push, FeedKind.STATUS)
        return {"ok": True}

    @app.post("/poll/{feed}", response_model=PollResponse, dependencies=[Depends(require_admin)])
    async def poll_feed(feed: FeedKind) -> PollResponse:
        try:
            processed = await service.poll(feed)
        except Exception as exc:
            logger.error("Manual poll failed", feed=feed.value, error=str(exc))
            raise HTTPException(status_code=502, detail=f"poll_failed: {exc}") from exc
        return PollResponse(feed=feed, processed=processed)

    @app.get("/subscriptions", response_model=list[SubscriptionResponse], dependencies=[Depends(require_admin)])
    async def list_subscriptions(guild_id: str | None = None, feed: FeedKind | None = None) -> list[SubscriptionResponse]:
        subs = await asyncio.to_thread(service.store.find_subscriptions, feed=feed, guild_id=guild_id)
        return [_subscription_response(s) for s in subs]

    @app.post(
        "/subscriptions",
        response_model=SubscriptionResponse,
        status_code=201,
        dependencies=[Depends(require_admin)],
    )
    async def create_subscription(body: SubscribeRequest) -> SubscriptionResponse:
        try:
            sub = await asyncio.to_thread(
                service.subscribe,
                guild_id=body.guild_id,
                channel_id=body.channel_id,
                feed=body.feed,
                auto_publish=body.auto_publish,
            )
        except SubscriptionExistsError as exc:
            raise HTTPException(status_code=409, detail="subscription_exists") from exc
        except SubscriptionLimitError as exc:
            raise HTTPException(status_code=400, detail="subscription_limit_reached") from exc
        return _subscription_response(sub)

    @app.delete("/subscriptions/{subscription_id}", status_code=204, dependencies=[Depends(require_admin)])
    async def delete_subscription(subscription_id: str) -> Response:
        removed = await asyncio.to_thread(service.unsubscribe, subscription_id)
        if not removed:
            raise HTTPException(status_code=404, detail="subscription_not_found")
        return Response(status_code=204)

    async def _recall(subscription_id: str, fn: Any) -> RecallResponse:
        try:
            message_id = await fn()
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"{exc.what}_not_found") from exc
        except Exception as exc:
            logger.error("Recall failed", subscription_id=subscription_id, error=str(exc))
            raise HTTPException(status_code=502, detail=f"recall_failed: {exc}") from exc
        return RecallResponse(subscription_id=subscription_id, message_id=message_id)

    @app.post(
        "/subscriptions/{subscription_id}/recall/status",
        response_model=RecallResponse,
        dependencies=[Depends(require_admin)],
    )
    async def recall_status(subscription_id: str, body: RecallStatusRequest) -> RecallResponse:
        return await _recall(subscription_id, lambda: service.recall_status(subscription_id, body.incident_id))

    @app.post(
        "/subscriptions/{subscription_id}/recall/previews",
        response_model=RecallResponse,
        dependencies=[Depends(require_admin)],
    )
    async def recall_comment(subscription_id: str, body: RecallCommentRequest) -> RecallResponse:
        return await _recall(subscription_id, lambda: service.recall_comment(subscription_id, body.comment_id))

    @app.put("/role-mentions", dependencies=[Depends(require_admin)])
    async def put_role_mention(body: RoleMentionRequest) -> dict[str, Any]:
        changed = await asyncio.to_thread(
            service.set_role_mention,
            guild_id=body.guild_id,
            feed=body.feed,
            key=body.key,
            role_id=body.role_id,
        )
        return {"ok": True, "changed": changed}

    return app
