from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

import httpx
import structlog

from feed_relay.errors import NoCredentialsError, SourceApiError
from feed_relay.models import CommitComment
from feed_relay.reconcile import merge_comment_batches
from feed_relay.retrying import transient_retrying
from feed_relay.sources.credentials import CredentialPool


logger = structlog.get_logger(__name__)

ACCEPT_V3 = "application/vnd.github.v3+json"
ACCEPT_FULL = "application/vnd.github.full+json"
ACCEPT_RAW = "application/octet-stream"
EVENTS_PER_PAGE = 100
# Hosts that may receive a pool token besides the API host itself.
CREDENTIAL_HOST_SUFFIXES = ("github.com", "githubusercontent.com")


@dataclass(frozen=True)
class GitHubSettings:
    owner: str
    repo: str
    api_base_url: str = "https://api.github.com"
    timeout_seconds: float = 20.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    commits_depth: int = 75
    max_event_pages: int = 5
    bootstrap_event_pages: int = 3
    bootstrap_commits_depth: int = 100


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class GitHubClient:
    """REST client for one repository, routing each request through the token pool."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        pool: CredentialPool,
        settings: GitHubSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.pool = pool
        self.settings = settings
        self._sleep = sleep

    def repo_url(self, path: str) -> str:
        s = self.settings
        return f"{s.api_base_url.rstrip('/')}/repos/{s.owner}/{s.repo}/{path.lstrip('/')}"

    def accepts_credentials(self, url: str) -> bool:
        host = _host(url)
        if not host:
            return False
        if host == _host(self.settings.api_base_url):
            return True
        return any(host == s or host.endswith("." + s) for s in CREDENTIAL_HOST_SUFFIXES)

    async def _get(self, url: str, headers: dict[str, str], params: dict[str, Any] | None) -> httpx.Response:
        return await self.client.get(
            url,
            params=params,
            headers=headers,
            timeout=self.settings.timeout_seconds,
            follow_redirects=True,
        )

    async def _get_rotating(self, url: str, headers: dict[str, str], params: dict[str, Any] | None) -> httpx.Response:
        """One logical GET, moving to the next token on 401 or a rate limit."""
        skip: set[str] = set()
        while True:
            cred = self.pool.acquire(exclude=skip)
            resp = await self._get(url, {**headers, "Authorization": f"Bearer {cred.token}"}, params)
            self.pool.record_rate_limit(cred.token, resp.headers)
            if resp.status_code == 401:
                self.pool.deactivate(cred.token)
                skip.add(cred.token)
                continue
            if resp.status_code == 429 or (
                resp.status_code == 403 and resp.headers.get("x-ratelimit-remaining") == "0"
            ):
                logger.info("Token rate limited, rotating", token=cred.hint, url=url)
                skip.add(cred.token)
                continue
            return resp

    async def request(
        self,
        url: str,
        *,
        preview: bool = False,
        accept: str | None = None,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """GET `url`; 5xx and network faults are retried, other 4xx raise `SourceApiError`.

        Raises `NoCredentialsError` once every token is unusable.
        """
        headers = {"Accept": accept or (ACCEPT_FULL if preview else ACCEPT_V3)}
        s = self.settings
        retrying = transient_retrying(
            attempts=s.max_retries,
            delay=s.retry_delay_seconds,
            event="GitHub request failed, retrying",
            sleep=self._sleep,
            url=url,
        )
        async for attempt in retrying:
            with attempt:
                if authenticated:
                    resp = await self._get_rotating(url, headers, params)
                else:
                    resp = await self._get(url, headers, params)
                if resp.status_code >= 400:
                    raise SourceApiError(resp.status_code, url)
        return resp

    async def get_json(self, url: str, *, preview: bool = False, params: dict[str, Any] | None = None) -> Any:
        resp = await self.request(url, preview=preview, params=params)
        return resp.json()

    async def list_recent_commits(self, per_page: int) -> list[dict[str, Any]]:
        data = await self.get_json(self.repo_url("commits"), params={"per_page": int(per_page)})
        return [c for c in data if isinstance(c, dict)] if isinstance(data, list) else []

    async def list_commit_comments(self, sha: str) -> list[CommitComment]:
        data = await self.get_json(self.repo_url(f"commits/{sha}/comments"), preview=True)
        if not isinstance(data, list):
            return []
        return [CommitComment.from_json(c) for c in data if isinstance(c, dict) and c.get("id")]

    async def list_events(self, page: int, per_page: int = EVENTS_PER_PAGE) -> list[dict[str, Any]]:
        data = await self.get_json(self.repo_url("events"), preview=True, params={"per_page": per_page, "page": page})
        return [e for e in data if isinstance(e, dict)] if isinstance(data, list) else []

    async def get_comment(self, url: str) -> CommitComment:
        data = await self.get_json(url, preview=True)
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected comment response from {url}")
        return CommitComment.from_json(data)

    async def get_comment_by_id(self, comment_id: int) -> CommitComment:
        return await self.get_comment(self.repo_url(f"comments/{int(comment_id)}"))

    async def download(self, url: str) -> tuple[bytes, str | None] | None:
        """Fetch an attachment. Pool tokens only go to GitHub hosts."""
        try:
            resp = await self.request(url, accept=ACCEPT_RAW, authenticated=self.accepts_credentials(url))
        except (SourceApiError, httpx.HTTPError) as exc:
            logger.warning("Attachment download failed", url=url, error=str(exc))
            return None
        return resp.content, resp.headers.get("content-type")


def _event_comment(event: dict[str, Any]) -> dict[str, Any] | None:
    if event.get("type") != "CommitCommentEvent":
        return None
    payload = event.get("payload")
    comment = payload.get("comment") if isinstance(payload, dict) else None
    if not isinstance(comment, dict) or not comment.get("id"):
        return None
    return comment


class CommentDiscovery:
    """Finds commit comments newer than a cursor using two independent walks."""

    def __init__(self, github: GitHubClient) -> None:
        self.github = github

    async def from_commits(
        self, since_id: int, depth: int | None = None, *, strict: bool = False
    ) -> list[CommitComment]:
        depth = depth or self.github.settings.commits_depth
        commits = await self.github.list_recent_commits(depth)
        found: list[CommitComment] = []
        for commit in commits:
            sha = str(commit.get("sha") or "")
            if not sha:
                continue
            try:
                comments = await self.github.list_commit_comments(sha)
            except SourceApiError as exc:
                if strict and exc.status != 404:
                    raise
                if exc.status != 404:
                    logger.warning("Skipping commit comments", sha=sha[:7], status=exc.status)
                continue
            found.extend(c for c in comments if c.id > since_id)
        return found

    async def from_events(self, since_id: int, max_pages: int | None = None) -> list[CommitComment]:
        max_pages = max_pages or self.github.settings.max_event_pages
        found: list[CommitComment] = []
        for page in range(1, max_pages + 1):
            events = await self.github.list_events(page)
            reached_cursor = False
            for event in events:
                comment = _event_comment(event)
                if comment is None:
                    continue
                if int(comment["id"]) <= since_id:
                    reached_cursor = True
                    break
                found.append(CommitComment.from_json(comment))
            if reached_cursor or len(events) < EVENTS_PER_PAGE:
                break
        return found

    async def discover(self, since_id: int) -> list[CommitComment]:
        """Union of both walks, deduplicated and sorted by ascending id.

        One failing walk is logged and skipped; if both fail the first error is raised.
        """
        batches: list[list[CommitComment]] = []
        errors: list[Exception] = []
        for name, walk in (("commits", self.from_commits), ("events", self.from_events)):
            try:
                batches.append(await walk(since_id))
            except NoCredentialsError:
                raise
            except (SourceApiError, httpx.HTTPError) as exc:
                logger.warning("Comment discovery strategy failed", strategy=name, error=str(exc))
                errors.append(exc)
        if not batches and errors:
            raise errors[0]
        return merge_comment_batches(*batches)

    async def scan_max_comment_id(self) -> int:
        """Newest comment id visible in the event log and the recent commits.

        Any failed request raises instead of yielding a partial maximum.
        """
        s = self.github.settings
        best = 0
        for page in range(1, s.bootstrap_event_pages + 1):
            events = await self.github.list_events(page)
            for event in events:
                comment = _event_comment(event)
                if comment is not None:
                    best = max(best, int(comment["id"]))
            if len(events) < EVENTS_PER_PAGE:
                break
        for c in await self.from_commits(0, depth=s.bootstrap_commits_depth, strict=True):
            best = max(best, c.id)
        return best
