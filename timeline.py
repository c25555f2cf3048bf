"""Per-user activity timeline: append-only local events plus the combined
read-side view that merges in answers synced from the game platform."""

from __future__ import annotations

import logging
import math
import os
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import db
from errors import ValidationError
from schemas import parse_event_payload

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = os.getenv("TIMELINE_TZ", "Europe/Amsterdam")

KNOWN_EVENT_TYPES = frozenset(
    {"page_open", "page_close", "note_save", "link_click", "click", "bibendo_sync"}
)

GAME_SOURCE = "bibendo_game"
APP_SOURCE = "app"

_EVENT_TYPE_MAX = 64


def _parse_iso_timestamp(value: Any) -> Optional[datetime]:
    """Best-effort parsing for stored timestamps; naive values are read as UTC."""

    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, db.ISO_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _coerce_duration(duration: Any) -> Optional[float]:
    if duration is None or duration == "":
        return None
    if isinstance(duration, bool):
        raise ValidationError("duration must be a number of seconds")
    try:
        value = float(duration)
    except (TypeError, ValueError) as exc:
        raise ValidationError("duration must be a number of seconds") from exc
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise ValidationError("duration must be a non-negative number of seconds")
    return value


def _event_type(event_type: Any) -> str:
    value = str(event_type or "").strip()
    if not value:
        raise ValidationError("eventType is required")
    return value[:_EVENT_TYPE_MAX]


def log_event(
    user_id: str,
    page_id: Optional[str],
    event_type: str,
    duration: Any = None,
    payload: Any = None,
) -> int:
    """Append one immutable event and return its id. Unknown event types are kept as sent."""
    kind = _event_type(event_type)
    page = db.sanitize_page_id(page_id, required=False)
    seconds = _coerce_duration(duration)
    data = parse_event_payload(kind, payload)
    user = db.ensure_user(user_id)
    if kind not in KNOWN_EVENT_TYPES:
        logger.debug("Storing unrecognised event type %s for %s", kind, user)
    return db.insert_timeline_event(user, page, kind, seconds, data)


def log_time_spent(user_id: str, page_id: Any, seconds: Any) -> int:
    """Older pages report time on page separately; it lands as a ``page_close`` event."""
    if not str(page_id or "").strip():
        raise ValidationError("pageId is required")
    if seconds is None or seconds == "" or seconds == 0:
        raise ValidationError("timeSpent is required")
    return log_event(user_id, page_id, "page_close", duration=seconds)


def log_text_action(user_id: str, page_id: Any, action_type: Any, data: Any = None) -> int:
    if not str(page_id or "").strip():
        raise ValidationError("pageId is required")
    if not str(action_type or "").strip():
        raise ValidationError("actionType is required")
    return log_event(user_id, page_id, action_type, payload=data if data is not None else {})


def list_events(user_id: str, limit: int = 100, *, ascending: bool = False) -> List[Dict[str, Any]]:
    """Newest first unless ``ascending``; equal timestamps fall back to row id."""
    return db.list_timeline_events(
        db.sanitize_user_id(user_id), max(0, int(limit)), ascending=ascending
    )


def list_events_ascending(user_id: str) -> List[Dict[str, Any]]:
    """Oldest first, unbounded; used by the admin day view and exports."""
    return db.list_timeline_events(db.sanitize_user_id(user_id), None, ascending=True)


def _combined_entry(row: Dict[str, Any]) -> Dict[str, Any]:
    entry = {
        "event_key": f"{row['source']}:{row['id']}",
        "source": row["source"],
        "id": row["id"],
        "user_id": row["user_id"],
        "page_id": row["page_id"],
        "event_type": row["event_type"],
        "timestamp": row["timestamp"],
        "duration": row["duration"],
        "event_data": row["event_data"],
    }
    if row["source"] == GAME_SOURCE:
        entry.update(
            {
                "run_id": row["run_id"],
                "question_id": row["question_id"],
                "question_text": row["question_text"],
                "answer_text": row["answer_text"],
                "is_correct": None if row["is_correct"] is None else bool(row["is_correct"]),
                "points": row["points"],
            }
        )
    return entry


def get_combined_timeline(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Local events and synced game answers, newest first.

    Equal timestamps order app events before game answers, then by descending
    row id, so unchanged data always comes back in the same order.
    """
    rows = db.list_combined_timeline(db.sanitize_user_id(user_id), max(0, int(limit)))
    return [_combined_entry(row) for row in rows]


def group_by_day(
    events: Iterable[Dict[str, Any]], tz: Optional[str] = None
) -> "OrderedDict[str, List[Dict[str, Any]]]":
    """Group events by calendar day in ``tz``; days newest first, events oldest first."""
    try:
        zone = ZoneInfo(tz or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"unknown time zone: {tz}") from exc
    buckets: Dict[str, List[tuple]] = {}
    for index, event in enumerate(events):
        moment = _parse_iso_timestamp(event.get("timestamp"))
        if moment is None:
            logger.debug("Skipping event without a readable timestamp: %s", event.get("id"))
            continue
        day = moment.astimezone(zone).date().isoformat()
        buckets.setdefault(day, []).append((moment, event.get("id") or 0, index, event))

    grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for day in sorted(buckets, reverse=True):
        ordered = sorted(buckets[day], key=lambda item: item[:3])
        grouped[day] = [item[3] for item in ordered]
    return grouped


def total_time_spent(events: Iterable[Dict[str, Any]]) -> float:
    """Seconds on pages, summed from ``page_close`` durations."""
    total = 0.0
    for event in events:
        if event.get("event_type") != "page_close":
            continue
        duration = event.get("duration")
        if isinstance(duration, (int, float)):
            total += float(duration)
    return total
