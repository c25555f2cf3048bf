"""Read-only admin views: dashboard counters, per-user day summaries and CSV export."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import content
import db
import timeline

ACTIVE_WINDOW = timedelta(hours=24)

CONTENT_HEADER = ["page_id", "field_number", "content_type", "version", "created_at", "content"]
TIMELINE_HEADER = ["timestamp", "event_type", "page_id", "duration", "event_data"]


def dashboard_stats(now: Optional[datetime] = None) -> Dict[str, int]:
    """Headline counters; a user is active when seen within the last 24 hours."""
    moment = now or datetime.now(timezone.utc)
    active_since = (moment - ACTIVE_WINDOW).astimezone(timezone.utc).strftime(db.ISO_FORMAT)
    return db.dashboard_counts(active_since)


def user_timeline(user_id: str) -> Dict[str, Any]:
    events = timeline.list_events_ascending(user_id)
    return {
        "userId": db.sanitize_user_id(user_id),
        "events": events,
        "eventCount": len(events),
        "totalTimeSeconds": timeline.total_time_spent(events),
    }


def user_days(user_id: str, tz: Optional[str] = None) -> List[Dict[str, Any]]:
    """One summary per local calendar day, newest day first."""
    grouped = timeline.group_by_day(timeline.list_events_ascending(user_id), tz)
    days = []
    for day, events in grouped.items():
        pages = sorted({event["page_id"] for event in events if event.get("page_id")})
        days.append(
            {
                "date": day,
                "eventCount": len(events),
                "totalTimeSeconds": timeline.total_time_spent(events),
                "pages": pages,
                "events": events,
            }
        )
    return days


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return value


def export_user_csv(user_id: str) -> str:
    """Latest content per field followed by the full timeline, as one CSV document."""
    user = db.sanitize_user_id(user_id)
    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(["# content", user])
    writer.writerow(CONTENT_HEADER)
    for row in content.get_all_latest(user):
        writer.writerow([_cell(row.get(column)) for column in CONTENT_HEADER])

    writer.writerow([])
    writer.writerow(["# timeline", user])
    writer.writerow(TIMELINE_HEADER)
    for event in timeline.list_events_ascending(user):
        writer.writerow([_cell(event.get(column)) for column in TIMELINE_HEADER])
    return output.getvalue()
