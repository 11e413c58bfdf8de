from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
import structlog

from feed_relay.errors import SourceApiError
from feed_relay.models import Incident, parse_timestamp
from feed_relay.retrying import transient_retrying


logger = structlog.get_logger(__name__)

PER_PAGE = 100
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class StatusPageSettings:
    base_url: str = "https://discordstatus.com"
    timeout_seconds: float = 15.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.5
    page_limit: int = 25


def _newest_first(items: list[Incident]) -> list[Incident]:
    return sorted(items, key=lambda i: parse_timestamp(i.created_at) or _EPOCH, reverse=True)


class StatusPageClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: StatusPageSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return f"{self.settings.base_url.rstrip('/')}/api/v2/{path}"

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET with retries on 5xx and transient network errors; 4xx raises at once."""
        url = self._url(path)
        s = self.settings
        retrying = transient_retrying(
            attempts=s.max_retries,
            delay=s.retry_delay_seconds,
            event="Status request failed, retrying",
            sleep=self._sleep,
            url=url,
        )
        async for attempt in retrying:
            with attempt:
                resp = await self.client.get(url, params=params, timeout=s.timeout_seconds)
                if resp.status_code >= 400:
                    raise SourceApiError(resp.status_code, url)
        return resp.json()

    async def _list(self, path: str, key: str, params: dict[str, Any] | None = None) -> list[Incident]:
        data = await self._get_json(path, params)
        items = data.get(key) if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [Incident.from_json(x) for x in items if isinstance(x, dict) and x.get("id")]

    async def fetch_active(self) -> list[Incident]:
        """Unresolved incidents plus in-progress maintenances, newest first.

        Raises when either endpoint keeps failing: a partial answer would look
        like every missing incident had been resolved.
        """
        incidents = await self._list("incidents/unresolved.json", "incidents")
        maintenances = await self._list("scheduled-maintenances/active.json", "scheduled_maintenances")
        return _newest_first(incidents + maintenances)

    async def _paginate(self, path: str, key: str, page_limit: int) -> list[Incident]:
        out: list[Incident] = []
        for page in range(1, page_limit + 1):
            try:
                items = await self._list(path, key, {"page": page, "per_page": PER_PAGE})
            except (SourceApiError, httpx.HTTPError) as exc:
                logger.error("Stopping pagination", path=path, page=page, error=str(exc))
                break
            if not items:
                break
            out.extend(items)
        return out

    async def fetch_history(self, page_limit: int | None = None) -> list[Incident]:
        limit = int(page_limit or self.settings.page_limit)
        incidents, maintenances = await asyncio.gather(
            self._paginate("incidents.json", "incidents", limit),
            self._paginate("scheduled-maintenances.json", "scheduled_maintenances", limit),
        )
        merged: dict[str, Incident] = {}
        for item in incidents + maintenances:
            merged[item.id] = item
        return _newest_first(list(merged.values()))

    async def fetch_incident(self, incident_id: str) -> Incident | None:
        data = await self._get_json(f"incidents/{incident_id}.json")
        raw = data.get("incident") if isinstance(data, dict) else None
        return Incident.from_json(raw) if isinstance(raw, dict) else None
