"""Pure diffing of upstream state against what a subscription already shows.

Nothing here performs I/O: callers fetch the upstream state, hand it in
together with the subscription's tracked state, and apply the returned
actions through the dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from feed_relay.models import CommitComment, Incident, TrackedIncident


@dataclass(frozen=True)
class CreateIncident:
    incident: Incident
    initial_update_id: str | None


@dataclass(frozen=True)
class EditIncident:
    tracked: TrackedIncident
    incident: Incident
    latest_update_id: str | None


@dataclass(frozen=True)
class FinalizeIncident:
    tracked: TrackedIncident


IncidentAction = Union[CreateIncident, EditIncident, FinalizeIncident]


def latest_update_id(incident: Incident) -> str | None:
    latest = incident.latest_update
    return latest.id if latest and latest.id else None


def plan_incident_actions(active: Iterable[Incident], tracked: Iterable[TrackedIncident]) -> list[IncidentAction]:
    """Create for new incidents, Edit for changed ones, Finalize for vanished ones.

    The result is ordered New, then Updated, then Resolved. An unchanged
    snapshot yields no actions.
    """
    active_by_id: dict[str, Incident] = {}
    for incident in active:
        if incident.id and incident.id not in active_by_id:
            active_by_id[incident.id] = incident

    tracked_by_id: dict[str, TrackedIncident] = {}
    for t in tracked:
        tracked_by_id.setdefault(t.incident_id, t)

    creates: list[IncidentAction] = []
    edits: list[IncidentAction] = []
    finals: list[IncidentAction] = []

    for incident_id, incident in active_by_id.items():
        t = tracked_by_id.get(incident_id)
        if t is None:
            creates.append(CreateIncident(incident=incident, initial_update_id=latest_update_id(incident)))
            continue
        newest = latest_update_id(incident)
        if newest != t.last_update_id and t.message_id:
            edits.append(EditIncident(tracked=t, incident=incident, latest_update_id=newest))

    for incident_id, t in tracked_by_id.items():
        if incident_id not in active_by_id:
            finals.append(FinalizeIncident(tracked=t))

    return creates + edits + finals


def merge_comment_batches(*batches: Iterable[CommitComment]) -> list[CommitComment]:
    """Union by id (first seen wins), ascending id order."""
    merged: dict[int, CommitComment] = {}
    for batch in batches:
        for comment in batch:
            merged.setdefault(comment.id, comment)
    return [merged[k] for k in sorted(merged)]


def comments_to_deliver(comments: Iterable[CommitComment], cursor: int | None) -> list[CommitComment]:
    """Comments strictly newer than a subscription's cursor, oldest first."""
    floor = int(cursor or 0)
    return [c for c in merge_comment_batches(comments) if c.id > floor]
