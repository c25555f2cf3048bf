# app.py: classroom notebook API
# - versioned notes and assignment fields per page
# - page activity timeline (sendBeacon friendly)
# - Bibendo game sync merged into a combined timeline

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

import cbm, content, db, reporting, timeline
from content import DEFAULT_CONTENT_TYPE
from errors import NotebookError, StorageError, ValidationError
from sync import GameSyncReconciler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Notebook store ready at %s | game API: %s", db.DB_PATH, SYNC.client.base_url)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Classroom Notebook", version="1.0.0", lifespan=_lifespan)

_API_LOGGER = logging.getLogger("notebook.api")
_SYNC_LOGGER = logging.getLogger("notebook.sync")
if not _SYNC_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    _SYNC_LOGGER.addHandler(_handler)
_SYNC_LOGGER.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

SYNC = GameSyncReconciler(db)


@app.exception_handler(NotebookError)
async def _notebook_error(request: Request, exc: NotebookError):
    if isinstance(exc, StorageError):
        _API_LOGGER.exception("Storage failure on %s %s", request.method, request.url.path)
    elif exc.status_code >= 500:
        _API_LOGGER.warning("%s on %s: %s", exc.kind, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
    return JSONResponse(status_code=400, content=ValidationError(detail).to_dict())


# ---------- Schemas ----------
class _CamelBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ContentSaveBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    page_id: Optional[str] = Field(default=None, alias="pageId")
    field_number: Optional[int] = Field(default=None, alias="fieldNumber")
    content_type: Optional[str] = Field(default=DEFAULT_CONTENT_TYPE, alias="contentType")
    content: Optional[str] = ""


class TimelineEventBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    page_id: Optional[str] = Field(default=None, alias="pageId")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    duration: Optional[float] = None
    event_data: Optional[Any] = Field(default=None, alias="eventData")


class BibendoAuthBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    bearer_token: Optional[str] = Field(default=None, alias="bearerToken")


class BibendoSyncBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")


class BibendoImportBody(_CamelBody):
    bearer_token: Optional[str] = Field(default=None, alias="bearerToken")


class LegacyNoteBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    page_id: Optional[str] = Field(default=None, alias="pageId")
    content: Optional[str] = ""


class LegacyTimeLogBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    page_id: Optional[str] = Field(default=None, alias="pageId")
    time_spent: Optional[float] = Field(default=None, alias="timeSpent")


class LegacyTextLogBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    page_id: Optional[str] = Field(default=None, alias="pageId")
    action_type: Optional[str] = Field(default=None, alias="actionType")
    data: Optional[Any] = None


class CbmResultBody(_CamelBody):
    user_id: Optional[str] = Field(default=None, alias="userId")
    text_id: Optional[str] = Field(default=None, alias="textId")
    text_title: Optional[str] = Field(default=None, alias="textTitle")
    total_questions: Optional[int] = Field(default=None, alias="totalQuestions")
    total_answered: Optional[int] = Field(default=None, alias="totalAnswered")
    correct_answers: Optional[int] = Field(default=None, alias="correctAnswers")
    accuracy: Optional[float] = None
    time_spent: Optional[float] = Field(default=None, alias="timeSpent")
    wcpm: Optional[float] = None
    answers: Optional[Any] = None


# ---------- Health ----------
@app.get("/api/health")
def health():
    return {"status": "ok", "time": datetime.now(timezone.utc).strftime(db.ISO_FORMAT)}


# ---------- Content ----------
@app.post("/api/content/save")
def content_save(body: ContentSaveBody):
    saved = content.save_field(
        body.user_id,
        body.page_id,
        body.field_number,
        body.content_type,
        body.content,
    )
    return {"success": True, **saved}


@app.get("/api/content/{user_id}/{page_id}/fields")
def content_fields(user_id: str, page_id: str, prefix: bool = False):
    fields = content.get_latest_all_fields(user_id, page_id, prefix=prefix)
    return {"success": True, "fields": fields}


@app.get("/api/content/{user_id}/{page_id}/history")
def content_history(user_id: str, page_id: str, field_number: Optional[int] = None):
    history = content.get_history(user_id, page_id, field_number)
    return {"success": True, "history": history}


@app.get("/api/content/{user_id}/{page_id}")
def content_get(user_id: str, page_id: str, field_number: Optional[int] = None):
    record = content.get_latest(user_id, page_id, field_number)
    return {"success": True, "content": record}


# ---------- Timeline ----------
@app.post("/api/timeline/event")
def timeline_event(body: TimelineEventBody):
    event_id = timeline.log_event(
        body.user_id,
        body.page_id,
        body.event_type,
        body.duration,
        body.event_data,
    )
    return {"success": True, "id": event_id}


@app.get("/api/timeline/{user_id}")
def timeline_list(user_id: str, limit: int = 100, order: Literal["desc", "asc"] = "desc"):
    events = timeline.list_events(user_id, limit, ascending=order == "asc")
    return {"success": True, "events": events}


# ---------- Bibendo ----------
@app.post("/api/bibendo/auth")
async def bibendo_auth(body: BibendoAuthBody):
    validated = await SYNC.set_token(body.user_id, body.bearer_token)
    return {"success": True, "validated": validated}


@app.post("/api/bibendo/sync")
async def bibendo_sync(body: BibendoSyncBody):
    user = db.sanitize_user_id(body.user_id)
    # A dropped connection must not abort a sync halfway.
    result = await asyncio.shield(SYNC.schedule(user))
    return result.to_dict()


@app.post("/api/bibendo/import")
async def bibendo_import(body: BibendoImportBody):
    if not (body.bearer_token or "").strip():
        raise ValidationError("bearerToken is required")
    result = await asyncio.shield(SYNC.schedule_import(body.bearer_token))
    return result.to_dict()


@app.get("/api/bibendo/timeline/{user_id}")
def bibendo_timeline(user_id: str, limit: int = 50):
    entries = timeline.get_combined_timeline(user_id, limit)
    return {"success": True, "userId": db.sanitize_user_id(user_id), "timeline": entries}


@app.get("/api/bibendo/choices/{user_id}")
def bibendo_choices(user_id: str, run_id: Optional[str] = None):
    return {"success": True, "choices": SYNC.list_choices(user_id, run_id)}


@app.get("/api/bibendo/test/{user_id}")
async def bibendo_test(user_id: str):
    return await SYNC.test_connection(db.sanitize_user_id(user_id))


# ---------- Admin ----------
@app.get("/api/admin/users")
def admin_users():
    return {"users": db.list_users()}


@app.get("/api/admin/stats")
def admin_stats():
    return reporting.dashboard_stats()


@app.get("/api/admin/user/{user_id}/content")
def admin_user_content(user_id: str):
    return {"userId": db.sanitize_user_id(user_id), "content": content.get_all_latest(user_id)}


@app.get("/api/admin/user/{user_id}/timeline")
def admin_user_timeline(user_id: str):
    return reporting.user_timeline(user_id)


@app.get("/api/admin/user/{user_id}/days")
def admin_user_days(user_id: str, tz: Optional[str] = None):
    zone = tz or timeline.DEFAULT_TIMEZONE
    return {"userId": db.sanitize_user_id(user_id), "timezone": zone, "days": reporting.user_days(user_id, zone)}


@app.get("/api/admin/user/{user_id}/export")
def admin_user_export(user_id: str):
    user = db.sanitize_user_id(user_id)
    return Response(
        content=reporting.export_user_csv(user),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{user}_export.csv"'},
    )


# ---------- Legacy notes ----------
@app.post("/api/notes/save")
def notes_save(body: LegacyNoteBody):
    saved = content.save_legacy_note(body.user_id, body.page_id, body.content)
    return {"success": True, **saved}


@app.get("/api/notes/{user_id}/level/{level}")
def notes_level(user_id: str, level: int):
    return {"success": True, "notes": content.list_level_notes(user_id, level)}


@app.get("/api/notes/{user_id}/{page_id}")
def notes_get(user_id: str, page_id: str):
    return content.get_legacy_note(user_id, page_id)


# ---------- Legacy activity logs ----------
@app.post("/api/logs/time")
def logs_time(body: LegacyTimeLogBody):
    event_id = timeline.log_time_spent(body.user_id, body.page_id, body.time_spent)
    return {"success": True, "id": event_id}


@app.post("/api/logs/text")
def logs_text(body: LegacyTextLogBody):
    event_id = timeline.log_text_action(body.user_id, body.page_id, body.action_type, body.data)
    return {"success": True, "id": event_id}


# ---------- Reading checks ----------
@app.post("/api/cbm/save-result")
def cbm_save(body: CbmResultBody):
    saved = cbm.save_result(
        body.user_id,
        body.text_id,
        total_questions=body.total_questions,
        correct_answers=body.correct_answers,
        text_title=body.text_title,
        total_answered=body.total_answered,
        accuracy=body.accuracy,
        time_spent=body.time_spent,
        wcpm=body.wcpm,
        answers=body.answers,
    )
    return {"success": True, "id": saved["id"], "message": "CBM result saved successfully"}


@app.get("/api/cbm/results/{user_id}")
def cbm_results(user_id: str):
    return cbm.list_results(user_id)


@app.get("/api/cbm/stats/{user_id}")
def cbm_stats(user_id: str):
    return cbm.result_stats(user_id)
