"""Pydantic models for the structured payloads attached to timeline events."""

from __future__ import annotations

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from errors import ValidationError

__all__ = [
    "PageOpenData",
    "PageCloseData",
    "LinkClickData",
    "ClickData",
    "NoteSaveData",
    "SyncEventData",
    "EVENT_PAYLOAD_MODELS",
    "parse_event_payload",
]


class _EventData(BaseModel):
    # Producers attach whatever they measure; unknown keys are kept.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PageOpenData(_EventData):
    url: Optional[str] = None
    referrer: Optional[str] = None
    screen_width: Optional[int] = Field(default=None, alias="screenWidth")
    screen_height: Optional[int] = Field(default=None, alias="screenHeight")
    window_width: Optional[int] = Field(default=None, alias="windowWidth")
    window_height: Optional[int] = Field(default=None, alias="windowHeight")


class PageCloseData(_EventData):
    reason: Optional[str] = None


class LinkClickData(_EventData):
    href: Optional[str] = None
    link_text: Optional[str] = Field(default=None, alias="linkText", max_length=500)
    target_page: Optional[str] = Field(default=None, alias="targetPage")
    x: Optional[float] = None
    y: Optional[float] = None


class ClickData(_EventData):
    tag_name: Optional[str] = Field(default=None, alias="tagName")
    class_name: Optional[str] = Field(default=None, alias="className")
    id: Optional[str] = None
    text: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


class NoteSaveData(_EventData):
    field_number: Optional[int] = None
    version: int = Field(ge=1)
    content_type: str


class SyncEventData(_EventData):
    run_id: str
    game_id: Optional[str] = None
    choices_count: int = Field(ge=0)


EVENT_PAYLOAD_MODELS: Dict[str, Type[_EventData]] = {
    "page_open": PageOpenData,
    "page_close": PageCloseData,
    "link_click": LinkClickData,
    "click": ClickData,
    "note_save": NoteSaveData,
    "bibendo_sync": SyncEventData,
}


def parse_event_payload(event_type: str, payload: Any) -> Any:
    """Validate payloads of known event types; anything else passes through untouched."""
    model = EVENT_PAYLOAD_MODELS.get(event_type)
    if model is None or payload is None:
        return payload
    if not isinstance(payload, dict):
        raise ValidationError(f"eventData for {event_type} must be an object")
    try:
        parsed = model.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "eventData"
        raise ValidationError(f"invalid eventData for {event_type}: {location} {first.get('msg', '')}".strip()) from exc
    return parsed.model_dump(by_alias=True, exclude_unset=True)
