"""Pull game runs and answers from the Bibendo platform into the local store.

A full sync walks games → runs → item catalog → responses, strictly one
request at a time. Runs and answers are upserted on their natural keys so
repeating a sync with unchanged upstream data changes no row counts. The
pipeline is best effort: one broken game or item is recorded in
``SyncResult.errors`` and the walk continues; rows already written are kept.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

import db
import timeline
from errors import AuthError, UpstreamError
from game_api import GameApiClient
from tokens import TokenStore, set_external_token

LOGGER = logging.getLogger("notebook.sync")

SYNC_EVENT_TYPE = "bibendo_sync"
SYNC_PAGE_ID = "bibendo_sync"

_AUTH_STATUSES = {401, 403}


class SyncState(str, Enum):
    IDLE = "idle"
    TOKEN_VALIDATING = "token_validating"
    FETCHING_GAMES = "fetching_games"
    FETCHING_RUNS = "fetching_runs"
    FETCHING_RESPONSES = "fetching_responses"
    PERSISTING = "persisting"


@dataclass
class SyncResult:
    user_id: str
    success: bool = False
    games_count: int = 0
    runs_count: int = 0
    choices_count: int = 0
    new_choices_count: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "userId": self.user_id,
            "gamesCount": self.games_count,
            "runsCount": self.runs_count,
            "choicesCount": self.choices_count,
            "newChoicesCount": self.new_choices_count,
            "errors": list(self.errors),
        }


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return db.json_dumps(value)
    return str(value)


def normalize_timestamp(value: Any) -> Optional[str]:
    """Render upstream times (epoch seconds/millis or ISO strings) in the store's format."""
    if value is None or value == "":
        return None
    moment: Optional[datetime] = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value) / 1000 if abs(float(value)) > 1e11 else float(value)
        try:
            moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.lstrip("-").isdigit():
            return normalize_timestamp(int(text))
        moment = timeline._parse_iso_timestamp(text)
    if moment is None:
        return None
    return moment.strftime(db.ISO_FORMAT)


def match_answer(item: Dict[str, Any], raw_value: Any) -> Tuple[Optional[str], Optional[bool], Optional[float]]:
    """Resolve answer text, correctness and points from the item's answer options.

    Options are matched on exact id equality with the raw response value. With
    no match the raw value is kept as the answer text and correctness and
    points stay unresolved.
    """
    answers = item.get("answers")
    if isinstance(answers, list) and raw_value is not None:
        for option in answers:
            if not isinstance(option, dict):
                continue
            if option.get("id") is not None and str(option.get("id")) == str(raw_value):
                is_correct = option.get("isCorrect")
                points = option.get("points")
                return (
                    _as_text(option.get("answer")) or "",
                    None if is_correct is None else bool(is_correct),
                    float(points) if isinstance(points, (int, float)) else 0.0,
                )
    return (_as_text(raw_value) or "", None, None)


class GameSyncReconciler:
    """Drives one user's sync through the states in :class:`SyncState`."""

    def __init__(
        self,
        db_module=db,
        *,
        client: Optional[GameApiClient] = None,
        token_store: Optional[TokenStore] = None,
    ) -> None:
        self._db = db_module
        self.client = client or GameApiClient()
        self.tokens = token_store or TokenStore(db_module)
        self._states: Dict[str, SyncState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    def state(self, user_id: str) -> SyncState:
        return self._states.get(user_id, SyncState.IDLE)

    def _enter(self, user_id: str, state: SyncState) -> None:
        if self._states.get(user_id) != state:
            LOGGER.debug("sync %s -> %s", user_id, state.value)
        self._states[user_id] = state

    async def _auth_failure(self, user_id: str, exc: UpstreamError) -> AuthError:
        LOGGER.info("Game platform rejected the token for %s (%s)", user_id, exc.upstream_status)
        await asyncio.to_thread(self.tokens.invalidate, user_id)
        return AuthError("Bibendo token rejected; provide a new token")

    # ------------------------------------------------------------------
    async def full_sync(self, user_id: str) -> SyncResult:
        """Run the whole pipeline for ``user_id``.

        Raises :class:`AuthError` when no usable token exists and
        :class:`UpstreamError` when the game list cannot be fetched. Later
        failures are collected on the result instead.
        """
        user = self._db.sanitize_user_id(user_id)
        lock = self._locks.setdefault(user, asyncio.Lock())
        self._holders[user] = self._holders.get(user, 0) + 1
        try:
            async with lock:
                try:
                    return await self._run(user)
                finally:
                    self._enter(user, SyncState.IDLE)
        finally:
            self._release(user)

    def _release(self, user: str) -> None:
        # Forget idle users once no sync holds or waits on their lock.
        remaining = self._holders.get(user, 0) - 1
        if remaining > 0:
            self._holders[user] = remaining
            return
        self._holders.pop(user, None)
        self._locks.pop(user, None)
        self._states.pop(user, None)

    def schedule(self, user_id: str) -> "asyncio.Task[SyncResult]":
        """Start a sync that keeps running even if the caller goes away."""
        return self._spawn(self.full_sync(user_id))

    def schedule_import(self, token: str) -> "asyncio.Task[SyncResult]":
        return self._spawn(self.import_with_token(token))

    def _spawn(self, coro) -> "asyncio.Task[SyncResult]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: "asyncio.Task[SyncResult]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            LOGGER.warning("Sync task cancelled")
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.info("Sync task ended with %s: %s", type(exc).__name__, exc)

    async def _run(self, user: str) -> SyncResult:
        result = SyncResult(user_id=user)
        LOGGER.info("Starting full sync for %s", user)

        self._enter(user, SyncState.TOKEN_VALIDATING)
        token = await asyncio.to_thread(self.tokens.get, user)
        if not token:
            raise AuthError("no valid Bibendo token for user; provide a new token")
        await asyncio.to_thread(self._db.ensure_user, user)

        self._enter(user, SyncState.FETCHING_GAMES)
        try:
            games = await self.client.list_games(token)
        except UpstreamError as exc:
            if exc.upstream_status in _AUTH_STATUSES:
                raise await self._auth_failure(user, exc) from exc
            raise
        result.games_count = len(games)

        for game in games:
            await self._sync_game_runs(user, token, game, result)

        await self._sync_responses(user, token, result)

        result.success = True
        LOGGER.info(
            "Full sync for %s done: %s games, %s runs, %s choices (%s new), %s errors",
            user,
            result.games_count,
            result.runs_count,
            result.choices_count,
            result.new_choices_count,
            len(result.errors),
        )
        return result

    async def _sync_game_runs(self, user: str, token: str, game: Dict[str, Any], result: SyncResult) -> None:
        game_id = _as_text(_first(game, "gameId", "game_id", "id"))
        if not game_id:
            result.errors.append("game without id skipped")
            return
        self._enter(user, SyncState.FETCHING_RUNS)
        try:
            runs = await self.client.list_runs(token, game_id)
        except UpstreamError as exc:
            if exc.upstream_status in _AUTH_STATUSES:
                raise await self._auth_failure(user, exc) from exc
            result.errors.append(f"game {game_id}: {exc.message}")
            return

        self._enter(user, SyncState.PERSISTING)
        title = _as_text(_first(game, "title", "name"))
        for run in runs:
            run_id = _as_text(_first(run, "runId", "run_id", "id"))
            if not run_id:
                result.errors.append(f"game {game_id}: run without id skipped")
                continue
            await asyncio.to_thread(
                self._db.upsert_sync_run,
                user,
                run_id,
                game_id=_as_text(_first(run, "gameId", "game_id")) or game_id,
                game_title=title,
                started_at=normalize_timestamp(_first(run, "startedAt", "started_at", "startTime")),
                completed_at=normalize_timestamp(_first(run, "completedAt", "completed_at", "endTime")),
                status=_as_text(_first(run, "status")),
            )
            result.runs_count += 1

    async def _sync_responses(self, user: str, token: str, result: SyncResult) -> None:
        runs = await asyncio.to_thread(self._db.list_sync_runs, user)
        catalog: Dict[str, Optional[List[Dict[str, Any]]]] = {}

        for run in runs:
            run_id, game_id = run["run_id"], run.get("game_id")
            if not game_id:
                result.errors.append(f"run {run_id}: unknown game")
                continue
            self._enter(user, SyncState.FETCHING_RESPONSES)
            if game_id not in catalog:
                try:
                    catalog[game_id] = await self.client.list_items(token, game_id)
                except UpstreamError as exc:
                    if exc.upstream_status in _AUTH_STATUSES:
                        raise await self._auth_failure(user, exc) from exc
                    catalog[game_id] = None
                    result.errors.append(f"game {game_id} items: {exc.message}")
            items = catalog[game_id]
            if items is None:
                continue

            written = new = 0
            for item in items:
                item_id = _as_text(_first(item, "id", "itemId"))
                if not item_id:
                    continue
                self._enter(user, SyncState.FETCHING_RESPONSES)
                try:
                    responses = await self.client.list_responses(token, run_id, item_id)
                except UpstreamError as exc:
                    if exc.upstream_status in _AUTH_STATUSES:
                        raise await self._auth_failure(user, exc) from exc
                    result.errors.append(f"run {run_id} item {item_id}: {exc.message}")
                    continue

                self._enter(user, SyncState.PERSISTING)
                # Oldest first so the newest answer for a question is the one kept.
                ordered = sorted(
                    responses, key=lambda r: normalize_timestamp(r.get("timestamp")) or ""
                )
                for response in ordered:
                    is_new = await asyncio.to_thread(self._persist_choice, user, run_id, item, response)
                    written += 1
                    new += 1 if is_new else 0

            result.choices_count += written
            result.new_choices_count += new
            if new:
                await asyncio.to_thread(
                    timeline.log_event,
                    user,
                    SYNC_PAGE_ID,
                    SYNC_EVENT_TYPE,
                    None,
                    {"run_id": run_id, "game_id": game_id, "choices_count": written},
                )

    def _persist_choice(self, user: str, run_id: str, item: Dict[str, Any], response: Dict[str, Any]) -> bool:
        raw_value = response.get("responseValue")
        answer_text, is_correct, points = match_answer(item, raw_value)
        question_id = _as_text(_first(response, "generalItemId")) or _as_text(_first(item, "id", "itemId"))
        metadata = {
            "itemType": item.get("type"),
            "itemId": item.get("id"),
            "itemName": item.get("name"),
            "responseId": response.get("responseId"),
            "rawResponseValue": raw_value,
        }
        return self._db.upsert_sync_choice(
            user,
            run_id,
            question_id,
            question_text=_as_text(_first(item, "text", "name", "title")) or "",
            answer_text=answer_text,
            answer_value=_as_text(raw_value),
            is_correct=is_correct,
            points=points,
            timestamp=normalize_timestamp(response.get("timestamp")) or self._db.now_iso(),
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    async def set_token(self, user_id: str, token: str) -> bool:
        return await set_external_token(user_id, token, store=self.tokens, client=self.client)

    async def import_with_token(self, token: str) -> SyncResult:
        """Resolve the learner behind ``token``, keep the token and sync everything."""
        candidate = (token or "").strip()
        if not candidate:
            raise AuthError("bearerToken is required")
        try:
            account = await self.client.account_details(candidate)
        except UpstreamError as exc:
            if exc.upstream_status in _AUTH_STATUSES:
                raise AuthError("invalid Bibendo bearer token") from exc
            raise
        raw_user = _first(account, "localId", "fullId", "accountId", "id", "email")
        if raw_user is None:
            raise UpstreamError("account details did not include an account id")
        user = await asyncio.to_thread(self._db.ensure_user, str(raw_user))
        await asyncio.to_thread(self.tokens.set, user, candidate)
        return await self.full_sync(user)

    async def test_connection(self, user_id: str) -> Dict[str, Any]:
        token = await asyncio.to_thread(self.tokens.get, user_id)
        if not token:
            raise AuthError("no token found for user")
        valid = await self.client.check_token(token)
        return {
            "success": valid,
            "hasToken": True,
            "message": "Token is valid" if valid else "Token is expired or invalid",
        }

    def list_choices(self, user_id: str, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._db.list_sync_choices(self._db.sanitize_user_id(user_id), run_id)
