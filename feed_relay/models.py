from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class FeedKind(str, Enum):
    STATUS = "status"
    PREVIEWS = "previews"


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    return s if s else None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class TrackedIncident:
    incident_id: str
    message_id: str | None = None
    last_updated_at: str | None = None
    last_update_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "message_id": self.message_id,
            "last_updated_at": self.last_updated_at,
            "last_update_id": self.last_update_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedIncident:
        return cls(
            incident_id=str(data.get("incident_id") or ""),
            message_id=_str_or_none(data.get("message_id")),
            last_updated_at=_str_or_none(data.get("last_updated_at")),
            last_update_id=_str_or_none(data.get("last_update_id")),
        )


@dataclass
class Subscription:
    id: str
    guild_id: str
    channel_id: str
    feed: FeedKind
    auto_publish: bool = False
    last_comment_id: int | None = None
    incidents: list[TrackedIncident] = field(default_factory=list)
    created_at_ts: float = 0.0

    def tracked(self, incident_id: str) -> TrackedIncident | None:
        for t in self.incidents:
            if t.incident_id == incident_id:
                return t
        return None

    def tracked_ids(self) -> set[str]:
        return {t.incident_id for t in self.incidents}

    def untrack(self, incident_id: str) -> bool:
        before = len(self.incidents)
        self.incidents = [t for t in self.incidents if t.incident_id != incident_id]
        return len(self.incidents) != before


@dataclass(frozen=True)
class AffectedComponent:
    code: str
    name: str
    old_status: str | None = None
    new_status: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AffectedComponent:
        return cls(
            code=str(data.get("code") or ""),
            name=str(data.get("name") or ""),
            old_status=_str_or_none(data.get("old_status")),
            new_status=_str_or_none(data.get("new_status")),
        )


@dataclass(frozen=True)
class IncidentUpdate:
    id: str
    status: str
    body: str = ""
    created_at: str | None = None
    updated_at: str | None = None
    display_at: str | None = None
    affected_components: tuple[AffectedComponent, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> IncidentUpdate:
        comps = data.get("affected_components") or []
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            body=str(data.get("body") or ""),
            created_at=_str_or_none(data.get("created_at")),
            updated_at=_str_or_none(data.get("updated_at")),
            display_at=_str_or_none(data.get("display_at")),
            affected_components=tuple(AffectedComponent.from_json(c) for c in comps if isinstance(c, dict)),
        )

    @property
    def shown_at(self) -> str | None:
        return self.display_at or self.created_at


@dataclass(frozen=True)
class Incident:
    """One incident or scheduled maintenance as reported by the status page.

    `incident_updates` keeps the upstream order, newest first.
    """

    id: str
    name: str
    status: str
    impact: str = "none"
    created_at: str | None = None
    updated_at: str | None = None
    resolved_at: str | None = None
    shortlink: str | None = None
    scheduled_for: str | None = None
    scheduled_until: str | None = None
    incident_updates: tuple[IncidentUpdate, ...] = ()
    components: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> Incident:
        updates = data.get("incident_updates") or []
        comps = data.get("components") or []
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            status=str(data.get("status") or ""),
            impact=str(data.get("impact") or "none"),
            created_at=_str_or_none(data.get("created_at")),
            updated_at=_str_or_none(data.get("updated_at")),
            resolved_at=_str_or_none(data.get("resolved_at")),
            shortlink=_str_or_none(data.get("shortlink")),
            scheduled_for=_str_or_none(data.get("scheduled_for")),
            scheduled_until=_str_or_none(data.get("scheduled_until")),
            incident_updates=tuple(IncidentUpdate.from_json(u) for u in updates if isinstance(u, dict)),
            components=tuple(str(c.get("name")) for c in comps if isinstance(c, dict) and c.get("name")),
        )

    @property
    def is_maintenance(self) -> bool:
        return bool(self.scheduled_for) or "maintenance" in self.name.lower()

    @property
    def latest_update(self) -> IncidentUpdate | None:
        return self.incident_updates[0] if self.incident_updates else None


@dataclass(frozen=True)
class CommentAttachment:
    name: str
    url: str
    content_type: str | None = None


@dataclass(frozen=True)
class CommitComment:
    id: int
    body: str
    commit_id: str = ""
    html_url: str = ""
    url: str = ""
    author_login: str = ""
    author_avatar_url: str | None = None
    author_url: str | None = None
    created_at: str | None = None
    path: str | None = None
    line: int | None = None
    attachments: tuple[CommentAttachment, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CommitComment:
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        attachments: list[CommentAttachment] = []
        for a in data.get("attachments") or []:
            if not isinstance(a, dict):
                continue
            url = a.get("url") or a.get("browser_download_url") or a.get("download_url")
            if not url:
                continue
            attachments.append(
                CommentAttachment(
                    name=str(a.get("name") or a.get("filename") or url.rsplit("/", 1)[-1]),
                    url=str(url),
                    content_type=_str_or_none(a.get("content_type")),
                )
            )
        return cls(
            id=int(data.get("id") or 0),
            body=str(data.get("body") or ""),
            commit_id=str(data.get("commit_id") or ""),
            html_url=str(data.get("html_url") or ""),
            url=str(data.get("url") or ""),
            author_login=str(user.get("login") or "unknown"),
            author_avatar_url=_str_or_none(user.get("avatar_url")),
            author_url=_str_or_none(user.get("html_url")),
            created_at=_str_or_none(data.get("created_at")),
            path=_str_or_none(data.get("path")),
            line=_int_or_none(data.get("line")),
            attachments=tuple(attachments),
        )


@dataclass(frozen=True)
class RoleMention:
    guild_id: str
    feed: FeedKind
    key: str
    role_id: str


@dataclass
class SourceCredential:
    token: str
    usage_count: int = 0
    last_used_ts: float | None = None
    rate_limit_remaining: int = 5000
    rate_limit_reset_ts: float | None = None
    is_active: bool = True

    @property
    def hint(self) -> str:
        return f"...{self.token[-4:]}" if len(self.token) > 4 else "..."
