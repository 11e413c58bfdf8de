"""Turn incidents and commit comments into platform-neutral message payloads.

A payload is a flat list of tagged blocks plus optional mention text and file
attachments. Only `feed_relay.chat.discord` knows how blocks map onto the wire.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Mapping, Union

from feed_relay.models import CommentAttachment, CommitComment, Incident, IncidentUpdate, RoleMention, parse_timestamp


COLORS = {
    "minor": 0xFEE75C,
    "major": 0xE67E22,
    "critical": 0xED4245,
    "none": 0x2C2F33,
    "resolved": 0x57F287,
    "maintenance": 0x3498DB,
}
KNOWN_CATEGORIES = ("Strings", "Experiments", "Endpoints", "Dismissible Content")
MISC_CATEGORY = "Miscellaneous"
MEDIA_TYPES = {"image/jpeg", "image/png", "image/gif", "video/mp4", "video/quicktime", "video/webm"}

MAX_FILES = 10
DIFF_INLINE_LIMIT = 3500
TEXT_BUDGET = 3800
BUTTONS_PER_ROW = 5
BUTTON_LABEL_MAX = 80
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SECTION_RE = re.compile(r"##+\s*(.+?)\r?\n+([\s\S]*?)(?=\r?\n##+|\Z)")
_EXPERIMENT_RE = re.compile(r"\bExperiments?\b", re.IGNORECASE)
_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(([^)]+)\)")
_IMAGE_SPLIT_RE = re.compile(r"(!\[[^\]]*\]\([^)]+\))")
_DIFF_RE = re.compile(r"```diff\s+([\s\S]*?)```")


@dataclass(frozen=True)
class TextBlock:
    content: str


@dataclass(frozen=True)
class DividerBlock:
    visible: bool = True
    large: bool = False


@dataclass(frozen=True)
class MediaGalleryBlock:
    files: tuple[str, ...]


@dataclass(frozen=True)
class FileBlock:
    name: str


@dataclass(frozen=True)
class LinkButton:
    label: str
    url: str


@dataclass(frozen=True)
class LinkButtonsBlock:
    buttons: tuple[LinkButton, ...]


Block = Union[TextBlock, DividerBlock, MediaGalleryBlock, FileBlock, LinkButtonsBlock]


@dataclass(frozen=True)
class FileAttachment:
    name: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass
class MessagePayload:
    blocks: list[Block] = field(default_factory=list)
    mention: str | None = None
    files: list[FileAttachment] = field(default_factory=list)
    accent_color: int | None = None


@dataclass(frozen=True)
class Section:
    title: str
    content: str
    category: str


def capitalize(value: str) -> str:
    s = str(value or "").replace("_", " ")
    return s[:1].upper() + s[1:]


def format_components(names: Iterable[str]) -> str:
    items = list(names)
    if not items:
        return "None"
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} and {items[1]}"
    return f"{', '.join(items[:-1])}, and {items[-1]}"


def discord_timestamps(when: datetime) -> tuple[str, str, str]:
    ts = int(when.timestamp())
    return f"<t:{ts}:R>", f"<t:{ts}:D>", f"<t:{ts}:t>"


def _posted_line(value: str | None) -> str:
    when = parse_timestamp(value)
    if when is None:
        return "-# Posted at an unknown time."
    relative, long_date, short_time = discord_timestamps(when)
    return f"-# Posted {relative}. {long_date} - {short_time}"


def _group_by_status(updates: list[IncidentUpdate]) -> list[tuple[str, list[IncidentUpdate]]]:
    groups: list[tuple[str, list[IncidentUpdate]]] = []
    for u in updates:
        if groups and groups[-1][0] == u.status:
            groups[-1][1].append(u)
        else:
            groups.append((u.status, [u]))
    return groups


def incident_accent(incident: Incident, *, force_original_color: bool = False) -> int:
    impact = (incident.impact or "none").lower()
    status = (incident.status or "").lower()
    if status in {"resolved", "completed"} and not force_original_color:
        return COLORS["resolved"]
    if impact != "none" and impact in COLORS:
        return COLORS[impact]
    if incident.is_maintenance:
        return COLORS["maintenance"]
    return COLORS["none"]


def render_incident(
    incident: Incident,
    *,
    page_base_url: str = "https://discordstatus.com",
    mention: str | None = None,
    force_original_color: bool = False,
) -> MessagePayload:
    """Full history of one incident, oldest update first.

    Consecutive updates with the same status share one heading; a status that
    occurs more than once over the whole incident gets numbered updates.
    """
    blocks: list[Block] = []

    components: list[str] = []
    for name in list(incident.components) + [c.name for u in incident.incident_updates for c in u.affected_components]:
        if name and name not in components:
            components.append(name)
    header = f"# Discord Status\n{incident.name}"
    if components:
        label = "This scheduled maintenance affected" if incident.is_maintenance else "This incident affected"
        header += f"\n-# {label}: {format_components(components)}"
    blocks.append(TextBlock(header))
    blocks.append(DividerBlock(visible=True, large=True))

    if incident.incident_updates:
        ordered = sorted(
            incident.incident_updates,
            key=lambda u: parse_timestamp(u.created_at) or _EPOCH,
        )
        counts: dict[str, int] = {}
        for u in ordered:
            counts[u.status] = counts.get(u.status, 0) + 1
        numbering: dict[str, int] = {}
        groups = _group_by_status(ordered)
        for gi, (status, updates) in enumerate(groups):
            if counts[status] <= 1:
                u = updates[0]
                blocks.append(TextBlock(f"## {capitalize(u.status)}\n{u.body}\n{_posted_line(u.shown_at)}"))
            else:
                blocks.append(TextBlock(f"## {capitalize(status)}"))
                for ui, u in enumerate(updates):
                    numbering[status] = numbering.get(status, 0) + 1
                    blocks.append(
                        TextBlock(f"### Update #{numbering[status]}\n- {u.body}\n{_posted_line(u.shown_at)}")
                    )
                    if ui < len(updates) - 1:
                        blocks.append(DividerBlock(visible=False))
            if gi < len(groups) - 1:
                blocks.append(DividerBlock(visible=True))
    else:
        blocks.append(
            TextBlock(
                f"## {capitalize(incident.status)}\nNo detailed updates available.\n{_posted_line(incident.created_at)}"
            )
        )

    blocks.append(DividerBlock(visible=True, large=True))
    base = page_base_url.rstrip("/")
    blocks.append(LinkButtonsBlock((LinkButton(label=f"{base.split('//', 1)[-1]}/incidents", url=f"{base}/incidents/{incident.id}"),)))

    return MessagePayload(
        blocks=blocks,
        mention=mention,
        accent_color=incident_accent(incident, force_original_color=force_original_color),
    )


def status_mention_keys(subscription_id: str, incident: Incident) -> list[str]:
    kind = "Maintenance" if incident.is_maintenance else "Incident"
    impact = capitalize((incident.impact or "none").lower())
    return [f"{subscription_id}:universal", f"{subscription_id}:{kind}", f"{subscription_id}:{impact}"]


def _role_ping(role_id: str) -> str:
    return f"<@&{role_id}>"


def status_mention(keys: list[str], roles: Iterable[RoleMention]) -> str | None:
    by_key = {r.key: _role_ping(r.role_id) for r in roles}
    pings: list[str] = []
    for k in keys:
        ping = by_key.get(k)
        if ping and ping not in pings:
            pings.append(ping)
    return " ".join(pings) if pings else None


def parse_sections(body: str) -> list[Section]:
    out: list[Section] = []
    for m in _SECTION_RE.finditer(body or ""):
        title = m.group(1).strip()
        content = m.group(2).strip()
        if _EXPERIMENT_RE.search(title):
            category = "Experiments"
        else:
            category = next((k for k in KNOWN_CATEGORIES if k.lower() == title.lower()), MISC_CATEGORY)
        out.append(Section(title=title, content=content, category=category))
    return out


def comment_mention(roles: Iterable[RoleMention], sections: list[Section]) -> str | None:
    universal: str | None = None
    by_category: dict[str, str] = {}
    for r in roles:
        if r.key.endswith(":universal"):
            universal = universal or _role_ping(r.role_id)
        elif ":" in r.key:
            by_category[r.key.split(":", 1)[1]] = _role_ping(r.role_id)
    pings: list[str] = [universal] if universal else []
    categories = [s.category for s in sections] or [MISC_CATEGORY]
    for cat in categories:
        ping = by_category.get(cat)
        if ping and ping not in pings:
            pings.append(ping)
    return " ".join(pings) if pings else None


def content_type_for(url: str) -> str:
    ext = url.split("?", 1)[0].rsplit(".", 1)[-1].lower()
    return {
        "jpg": "image/jpeg",
        "jpeg": "image/jpeg",
        "png": "image/png",
        "gif": "image/gif",
        "mp4": "video/mp4",
        "mov": "video/quicktime",
        "webm": "video/webm",
    }.get(ext, "application/octet-stream")


def collect_attachments(comment: CommitComment) -> list[CommentAttachment]:
    """API attachments plus images referenced in the markdown body."""
    combined = list(comment.attachments)
    for m in _IMAGE_RE.finditer(comment.body):
        url = m.group(1)
        if any(a.url == url for a in combined):
            continue
        name = url.rsplit("/", 1)[-1].split("?", 1)[0]
        combined.append(CommentAttachment(name=name or "attachment", url=url, content_type=content_type_for(url)))
    return combined


def inline_attachment_urls(comment: CommitComment, attachments: list[CommentAttachment]) -> list[str]:
    """URLs the renderer will embed, in body order, capped at the file limit."""
    known = {a.url for a in attachments}
    out: list[str] = []
    for m in _IMAGE_RE.finditer(comment.body):
        url = m.group(1)
        if url in known and url not in out:
            out.append(url)
    return out[:MAX_FILES]


class _CommentRenderer:
    def __init__(
        self,
        comment: CommitComment,
        attachments: list[CommentAttachment],
        downloads: Mapping[str, tuple[bytes, str | None]],
    ) -> None:
        self.comment = comment
        self.attachments = attachments
        self.downloads = downloads
        self.blocks: list[Block] = []
        self.files: list[FileAttachment] = []
        self.processed: set[str] = set()
        self.text_length = 0

    def _unique_name(self, desired: str) -> str:
        taken = {f.name for f in self.files}
        if desired not in taken:
            return desired
        base, dot, ext = desired.rpartition(".")
        if not dot:
            base, ext = desired, ""
        n = 1
        while True:
            candidate = f"{base}-{n}.{ext}" if ext else f"{base}-{n}"
            if candidate not in taken:
                return candidate
            n += 1

    def flush_images(self, group: list[CommentAttachment]) -> None:
        if not group:
            return
        room = max(0, MAX_FILES - len(self.files))
        media: list[str] = []
        others: list[str] = []
        for att in group[:room]:
            self.processed.add(att.url)
            got = self.downloads.get(att.url)
            if not got or not got[0]:
                continue
            data, ctype = got
            ctype = (ctype or att.content_type or "application/octet-stream").split(";", 1)[0].strip()
            name = self._unique_name(att.name)
            self.files.append(FileAttachment(name=name, data=data, content_type=ctype))
            (media if ctype in MEDIA_TYPES else others).append(name)
        if media:
            self.blocks.append(MediaGalleryBlock(tuple(media)))
            if others:
                self.blocks.append(DividerBlock(visible=True))
        self.blocks.extend(FileBlock(n) for n in others)

    def _move_diff(self, content: str, name: str) -> bool:
        if len(self.files) < MAX_FILES:
            self.files.append(FileAttachment(name=name, data=content.encode("utf-8"), content_type="text/plain"))
            self.blocks.append(FileBlock(name))
            return True
        # Out of slots: append to the newest text file instead.
        for i in range(len(self.files) - 1, -1, -1):
            f = self.files[i]
            if f.name.startswith(f"{self.comment.id}") and f.name.endswith(".txt"):
                self.files[i] = FileAttachment(
                    name=f.name, data=f.data + b"\n\n" + content.encode("utf-8"), content_type=f.content_type
                )
                return True
        return False

    def flush_text(self, text: str) -> None:
        trimmed = text.strip()
        if not trimmed:
            return
        diffs = [(m.group(0), m.group(1).strip()) for m in _DIFF_RE.finditer(trimmed)]
        moved = 0
        for full, content in diffs:
            if len(content) > DIFF_INLINE_LIMIT or self.text_length + len(trimmed) > TEXT_BUDGET:
                suffix = f"-({moved + 1})" if len(diffs) > 1 else ""
                if not self._move_diff(content, f"{self.comment.id}{suffix}.txt"):
                    break
                trimmed = trimmed.replace(full, "", 1)
                moved += 1
        final = trimmed.strip()
        if final:
            self.blocks.append(TextBlock(final))
            self.text_length += len(final)

    def process(self, content: str) -> None:
        buffer = ""
        group: list[CommentAttachment] = []
        for part in (p for p in _IMAGE_SPLIT_RE.split(content) if p):
            image = _IMAGE_RE.fullmatch(part.strip())
            if image:
                self.flush_text(buffer)
                buffer = ""
                att = next((a for a in self.attachments if a.url == image.group(1)), None)
                if att is not None:
                    group.append(att)
            elif not part.strip():
                buffer += part
            else:
                self.flush_images(group)
                group = []
                buffer += part
        self.flush_text(buffer)
        self.flush_images(group)


def render_commit_comment(
    comment: CommitComment,
    *,
    repo_html_url: str,
    sections: list[Section] | None = None,
    mention: str | None = None,
    downloads: Mapping[str, tuple[bytes, str | None]] | None = None,
    is_new: bool = True,
) -> MessagePayload:
    """Render one commit comment.

    Images referenced inline are attached from `downloads` (url -> bytes and
    content type). Long diff blocks move into `<comment id>.txt` files, and
    attachments never referenced inline become link buttons.
    """
    sections = parse_sections(comment.body) if sections is None else sections
    attachments = collect_attachments(comment)
    r = _CommentRenderer(comment, attachments, downloads or {})

    repo = repo_html_url.rstrip("/")
    short_sha = f"[`{comment.commit_id[:7]}`]({repo}/commit/{comment.commit_id})"
    author = f"[@{comment.author_login}]({comment.author_url})" if comment.author_url else f"@{comment.author_login}"
    verb = "a new" if is_new else "a"
    r.blocks.append(TextBlock("# Discord Previews"))
    byline = f"**{author}** in commit {short_sha} posted {verb} comment:"
    r.blocks.append(TextBlock(byline))
    r.blocks.append(DividerBlock(visible=True, large=True))
    r.text_length = len("# Discord Previews") + len(byline)

    if sections:
        for idx, section in enumerate(sections):
            r.blocks.append(TextBlock(f"## {section.title}"))
            r.process(section.content)
            if idx < len(sections) - 1:
                r.blocks.append(DividerBlock(visible=True))
    else:
        r.process(comment.body)

    remaining = [a for a in attachments if a.url not in r.processed]
    if remaining:
        r.blocks.append(DividerBlock(visible=True))
        r.blocks.append(TextBlock("## Additional Files"))
        for i in range(0, len(remaining), BUTTONS_PER_ROW):
            chunk = remaining[i : i + BUTTONS_PER_ROW]
            r.blocks.append(
                LinkButtonsBlock(
                    tuple(
                        LinkButton(
                            label=a.name if len(a.name) <= BUTTON_LABEL_MAX else a.name[: BUTTON_LABEL_MAX - 3] + "...",
                            url=a.url,
                        )
                        for a in chunk
                    )
                )
            )

    r.blocks.append(DividerBlock(visible=True, large=True))
    footer_url = comment.html_url or f"{repo}/commit/{comment.commit_id}"
    r.blocks.append(LinkButtonsBlock((LinkButton(label=repo.split("//", 1)[-1], url=footer_url),)))

    return MessagePayload(blocks=r.blocks, mention=mention, files=r.files)
