from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from feed_relay.chat.base import ChannelInfo
from feed_relay.errors import PlatformError, PlatformErrorKind
from feed_relay.render import (
    Block,
    DividerBlock,
    FileBlock,
    LinkButtonsBlock,
    MediaGalleryBlock,
    MessagePayload,
    TextBlock,
)


logger = structlog.get_logger(__name__)

IS_COMPONENTS_V2 = 1 << 15
CHANNEL_TYPE_ANNOUNCEMENT = 5

UNKNOWN_CHANNEL = 10003
UNKNOWN_MESSAGE = 10008
PUBLISH_RATE_LIMITED = 20031
MISSING_ACCESS = 50001
MISSING_PERMISSIONS = 50013


def classify_error(status: int, code: int | None) -> PlatformErrorKind:
    if code in {UNKNOWN_CHANNEL, UNKNOWN_MESSAGE} or status == 404:
        return PlatformErrorKind.NOT_FOUND
    if status == 429 or code == PUBLISH_RATE_LIMITED:
        return PlatformErrorKind.RATE_LIMITED
    if status == 403 or code in {MISSING_ACCESS, MISSING_PERMISSIONS}:
        return PlatformErrorKind.FORBIDDEN
    return PlatformErrorKind.UNKNOWN


def _encode_block(block: Block) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": 10, "content": block.content}
    if isinstance(block, DividerBlock):
        return {"type": 14, "divider": block.visible, "spacing": 2 if block.large else 1}
    if isinstance(block, MediaGalleryBlock):
        return {"type": 12, "items": [{"media": {"url": f"attachment://{name}"}} for name in block.files]}
    if isinstance(block, FileBlock):
        return {"type": 13, "file": {"url": f"attachment://{block.name}"}}
    if isinstance(block, LinkButtonsBlock):
        return {
            "type": 1,
            "components": [{"type": 2, "style": 5, "label": b.label, "url": b.url} for b in block.buttons],
        }
    raise TypeError(f"Unsupported block {type(block).__name__}")


def encode_payload(payload: MessagePayload) -> dict[str, Any]:
    """Components V2 message body: one container, then the mention line."""
    container: dict[str, Any] = {"type": 17, "components": [_encode_block(b) for b in payload.blocks]}
    if payload.accent_color is not None:
        container["accent_color"] = payload.accent_color
    components: list[dict[str, Any]] = [container]
    if payload.mention:
        components.append({"type": 10, "content": payload.mention})
    body: dict[str, Any] = {
        "flags": IS_COMPONENTS_V2,
        "components": components,
        "allowed_mentions": {"parse": ["roles"]},
    }
    if payload.files:
        body["attachments"] = [{"id": i, "filename": f.name} for i, f in enumerate(payload.files)]
    return body


class DiscordRestPlatform:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        bot_token: str,
        api_base_url: str = "https://discord.com/api/v10",
        timeout_seconds: float = 15.0,
    ) -> None:
        self.client = client
        self.bot_token = bot_token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def _call(self, method: str, path: str, payload: MessagePayload | None = None) -> Any:
        url = f"{self.api_base_url}{path}"
        headers = {"Authorization": f"Bot {self.bot_token}"}
        kwargs: dict[str, Any] = {}
        if payload is not None:
            body = encode_payload(payload)
            if payload.files:
                kwargs["data"] = {"payload_json": json.dumps(body, ensure_ascii=False)}
                kwargs["files"] = [
                    (f"files[{i}]", (f.name, f.data, f.content_type)) for i, f in enumerate(payload.files)
                ]
            else:
                kwargs["json"] = body
        try:
            resp = await self.client.request(method, url, headers=headers, timeout=self.timeout_seconds, **kwargs)
        except httpx.HTTPError as exc:
            raise PlatformError(PlatformErrorKind.UNKNOWN, message=f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            code: int | None = None
            message = resp.text[:200]
            try:
                data = resp.json()
                if isinstance(data, dict):
                    code = int(data["code"]) if "code" in data else None
                    message = str(data.get("message") or message)
            except ValueError:
                pass
            raise PlatformError(classify_error(resp.status_code, code), status=resp.status_code, code=code, message=message)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def get_channel(self, channel_id: str) -> ChannelInfo | None:
        try:
            data = await self._call("GET", f"/channels/{channel_id}")
        except PlatformError as exc:
            if exc.kind is PlatformErrorKind.NOT_FOUND:
                return None
            raise
        if not isinstance(data, dict):
            return None
        return ChannelInfo(
            id=str(data.get("id") or channel_id),
            guild_id=str(data["guild_id"]) if data.get("guild_id") else None,
            is_announcement=int(data.get("type") or 0) == CHANNEL_TYPE_ANNOUNCEMENT,
        )

    async def send(self, channel_id: str, payload: MessagePayload) -> str:
        data = await self._call("POST", f"/channels/{channel_id}/messages", payload)
        if not isinstance(data, dict) or not data.get("id"):
            raise PlatformError(PlatformErrorKind.UNKNOWN, message="send returned no message id")
        return str(data["id"])

    async def edit(self, channel_id: str, message_id: str, payload: MessagePayload) -> None:
        await self._call("PATCH", f"/channels/{channel_id}/messages/{message_id}", payload)

    async def crosspost(self, channel_id: str, message_id: str) -> None:
        await self._call("POST", f"/channels/{channel_id}/messages/{message_id}/crosspost")
