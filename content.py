"""Versioned content store for notes, analyses and assignment fields.

Every save appends a new immutable row for the logical key
``(user_id, page_id, field_number)``; the highest version is the current
value. Reads never raise for missing data: they return ``None`` or ``[]``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import db
import timeline
from errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 10_000
DEFAULT_CONTENT_TYPE = "note"

_TAG_RE = re.compile(r"</?[A-Za-z][^<>]*>")
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_SCRIPT_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_LEVEL_RE = re.compile(r"level(\d+)")

# Page ids that hold multi-field exercises rather than free notes.
_LEVEL_NOTE_EXCLUDES = ("analysis", "message", "plan")


def sanitize_text(text: Any) -> str:
    """Strip markup and control characters, neutralize stray angle brackets, cap the size."""
    if text is None:
        return ""
    value = str(text)
    value = _SCRIPT_BLOCK_RE.sub("", value)
    value = _COMMENT_RE.sub("", value)
    value = _TAG_RE.sub("", value)
    value = _CONTROL_RE.sub("", value)
    value = value.replace("<", "&lt;").replace(">", "&gt;")
    if len(value) > MAX_CONTENT_LENGTH:
        logger.info("Content truncated from %s to %s characters", len(value), MAX_CONTENT_LENGTH)
        value = value[:MAX_CONTENT_LENGTH]
    return value


def _coerce_field_number(field_number: Any) -> Optional[int]:
    if field_number is None or field_number == "":
        return None
    if isinstance(field_number, bool):
        raise ValidationError("fieldNumber must be an integer")
    try:
        value = int(field_number)
    except (TypeError, ValueError) as exc:
        raise ValidationError("fieldNumber must be an integer") from exc
    if value < 0:
        raise ValidationError("fieldNumber must not be negative")
    return value


def _content_type(content_type: Optional[str]) -> str:
    value = (content_type or "").strip()
    if not value:
        raise ValidationError("contentType is required")
    return value[:64]


def save_field(
    user_id: str,
    page_id: str,
    field_number: Optional[int],
    content_type: str,
    text: Any,
    *,
    log_event: bool = True,
) -> Dict[str, Any]:
    """Append a new version of the field and return ``{"id", "version"}``."""
    page = db.sanitize_page_id(page_id)
    field = _coerce_field_number(field_number)
    kind = _content_type(content_type)
    body = sanitize_text(text)
    user = db.ensure_user(user_id)

    saved = db.insert_content_version(user, page, field, kind, body)
    logger.debug(
        "Saved content user=%s page=%s field=%s version=%s", user, page, field, saved["version"]
    )
    if log_event:
        # The saved version stands even when the activity marker cannot be written.
        try:
            timeline.log_event(
                user,
                page,
                "note_save",
                payload={"field_number": field, "version": saved["version"], "content_type": kind},
            )
        except StorageError as exc:
            logger.warning("note_save event not recorded for %s/%s: %s", user, page, exc)
    return {"id": saved["id"], "version": saved["version"]}


def get_latest(user_id: str, page_id: str, field_number: Optional[int] = None) -> Optional[Dict[str, Any]]:
    return db.get_latest_content(
        db.sanitize_user_id(user_id), db.sanitize_page_id(page_id), _coerce_field_number(field_number)
    )


def get_latest_all_fields(user_id: str, page_id: str, *, prefix: bool = False) -> List[Dict[str, Any]]:
    return db.list_latest_content_for_page(
        db.sanitize_user_id(user_id), db.sanitize_page_id(page_id), prefix=prefix
    )


def get_all_latest(user_id: str) -> List[Dict[str, Any]]:
    return db.list_latest_content(db.sanitize_user_id(user_id))


def get_history(user_id: str, page_id: str, field_number: Optional[int] = None) -> List[Dict[str, Any]]:
    return db.list_content_history(
        db.sanitize_user_id(user_id), db.sanitize_page_id(page_id), _coerce_field_number(field_number)
    )


# -------------- legacy note adapter --------------
def infer_content_type(page_id: str) -> str:
    """Map an old notes page id onto a content type."""
    page = (page_id or "").lower()
    if "analysis" in page:
        return "analysis"
    if "message" in page:
        return "message"
    if "final_assignment" in page:
        return "assignment_field"
    return DEFAULT_CONTENT_TYPE


def extract_level(page_id: str) -> int:
    match = _LEVEL_RE.search(page_id or "")
    if match:
        level = int(match.group(1))
        if level in (1, 2, 3):
            return level
    return 1


def save_legacy_note(user_id: str, page_id: str, content: Any) -> Dict[str, Any]:
    """Old ``/api/notes/save`` shape: one unnumbered field per page."""
    return save_field(user_id, page_id, None, infer_content_type(page_id), content)


def get_legacy_note(user_id: str, page_id: str) -> Dict[str, Any]:
    record = get_latest(user_id, page_id)
    if record is None:
        return {"content": ""}
    record["level"] = extract_level(record["page_id"])
    return record


def list_level_notes(user_id: str, level: int) -> List[Dict[str, Any]]:
    notes = []
    for record in get_all_latest(user_id):
        page = record["page_id"]
        if extract_level(page) != int(level):
            continue
        if any(marker in page for marker in _LEVEL_NOTE_EXCLUDES):
            continue
        notes.append(record)
    notes.sort(key=lambda r: (r["created_at"], r["id"]))
    return notes
