import json
import os
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool
from errors import StorageError, ValidationError

DB_PATH = os.getenv("DB_PATH", "data.db")

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_USER_ID_MAX = 128
_USER_ID_DISALLOWED = re.compile(r"[^A-Za-z0-9_.@-]")
_PAGE_ID_MAX = 200
_VERSION_ATTEMPTS = 5

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            con.commit()
            return cur
    except sqlite3.Error as exc:
        raise StorageError(f"database write failed: {exc}") from exc


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            return cur.fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"database read failed: {exc}") from exc


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    try:
        with _conn() as con:
            con.executescript(
                """
                PRAGMA foreign_keys = ON;
                PRAGMA journal_mode=WAL;

                CREATE TABLE IF NOT EXISTS users (
                  user_id      TEXT PRIMARY KEY,
                  created_at   TEXT NOT NULL,
                  last_active  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS content (
                  id            INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id       TEXT NOT NULL,
                  page_id       TEXT NOT NULL,
                  field_number  INTEGER,
                  content_type  TEXT NOT NULL,
                  content       TEXT NOT NULL DEFAULT '',
                  version       INTEGER NOT NULL,
                  created_at    TEXT NOT NULL,
                  updated_at    TEXT NOT NULL,
                  FOREIGN KEY(user_id) REFERENCES users(user_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS uq_content_version
                  ON content(user_id, page_id, IFNULL(field_number, -1), version);
                CREATE INDEX IF NOT EXISTS idx_content_user ON content(user_id, page_id);

                CREATE TABLE IF NOT EXISTS timeline_events (
                  id          INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id     TEXT NOT NULL,
                  page_id     TEXT,
                  event_type  TEXT NOT NULL,
                  timestamp   TEXT NOT NULL,
                  duration    REAL,
                  event_data  TEXT,
                  FOREIGN KEY(user_id) REFERENCES users(user_id)
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_user ON timeline_events(user_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS sync_runs (
                  id            INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id       TEXT NOT NULL,
                  run_id        TEXT NOT NULL,
                  game_id       TEXT,
                  game_title    TEXT,
                  started_at    TEXT,
                  completed_at  TEXT,
                  status        TEXT NOT NULL DEFAULT 'active',
                  synced_at     TEXT NOT NULL,
                  UNIQUE(user_id, run_id)
                );

                CREATE TABLE IF NOT EXISTS sync_choices (
                  id             INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id        TEXT NOT NULL,
                  run_id         TEXT NOT NULL,
                  question_id    TEXT NOT NULL,
                  question_text  TEXT,
                  answer_text    TEXT,
                  answer_value   TEXT,
                  is_correct     INTEGER,
                  points         REAL,
                  timestamp      TEXT NOT NULL,
                  metadata       TEXT,
                  synced_at      TEXT NOT NULL,
                  UNIQUE(user_id, run_id, question_id)
                );

                CREATE INDEX IF NOT EXISTS idx_sync_choices_user ON sync_choices(user_id, timestamp DESC);

                CREATE TABLE IF NOT EXISTS external_tokens (
                  user_id     TEXT PRIMARY KEY,
                  token       TEXT NOT NULL,
                  created_at  TEXT NOT NULL,
                  expires_at  TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cbm_results (
                  id               INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id          TEXT NOT NULL,
                  text_id          TEXT NOT NULL,
                  text_title       TEXT,
                  total_questions  INTEGER NOT NULL,
                  total_answered   INTEGER NOT NULL DEFAULT 0,
                  correct_answers  INTEGER NOT NULL,
                  accuracy         REAL NOT NULL DEFAULT 0,
                  time_spent       REAL NOT NULL DEFAULT 0,
                  wcpm             REAL NOT NULL DEFAULT 0,
                  answers          TEXT,
                  completed_at     TEXT NOT NULL,
                  FOREIGN KEY(user_id) REFERENCES users(user_id)
                );

                CREATE INDEX IF NOT EXISTS idx_cbm_user ON cbm_results(user_id, completed_at DESC);

                CREATE VIEW IF NOT EXISTS combined_timeline AS
                  SELECT 'app' AS source, 0 AS source_rank, id, user_id, page_id, event_type,
                         timestamp, duration, event_data,
                         NULL AS run_id, NULL AS question_id, NULL AS question_text,
                         NULL AS answer_text, NULL AS is_correct, NULL AS points
                    FROM timeline_events
                  UNION ALL
                  SELECT 'bibendo_game' AS source, 1 AS source_rank, id, user_id,
                         'bibendo_run:' || run_id AS page_id, 'game_choice' AS event_type,
                         timestamp, NULL AS duration, metadata AS event_data,
                         run_id, question_id, question_text, answer_text, is_correct, points
                    FROM sync_choices;
                """
            )
    except sqlite3.Error as exc:
        raise StorageError(f"database initialisation failed: {exc}") from exc


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


def sanitize_user_id(user_id: Any) -> str:
    """Reduce ``user_id`` to the opaque token alphabet; empty results are rejected."""
    if user_id is None:
        raise ValidationError("userId is required")
    cleaned = _USER_ID_DISALLOWED.sub("", str(user_id).strip())[:_USER_ID_MAX]
    if not cleaned:
        raise ValidationError("userId is required")
    return cleaned


def sanitize_page_id(page_id: Any, *, required: bool = True) -> Optional[str]:
    if page_id is None or not str(page_id).strip():
        if required:
            raise ValidationError("pageId is required")
        return None
    return str(page_id).strip()[:_PAGE_ID_MAX]


# -------------- users --------------
def ensure_user(user_id: str) -> str:
    """Insert ``user_id`` if unknown and bump ``last_active``. Returns the stored id."""
    user_id = sanitize_user_id(user_id)
    now = now_iso()
    try:
        with _pool.transaction() as con:
            con.execute(
                "INSERT INTO users(user_id, created_at, last_active) VALUES (?,?,?) "
                "ON CONFLICT(user_id) DO NOTHING",
                (user_id, now, now),
            )
            con.execute(
                "UPDATE users SET last_active = ? WHERE user_id = ? AND last_active < ?",
                (now, user_id, now),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"could not register user: {exc}") from exc
    return user_id


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, created_at, last_active FROM users WHERE user_id = ?",
        (user_id,),
    )
    return dict(rows[0]) if rows else None


def list_users() -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, created_at, last_active FROM users ORDER BY last_active DESC, user_id"
    )
    return [dict(row) for row in rows]


# -------------- content (versioned) --------------
_CONTENT_COLUMNS = (
    "id, user_id, page_id, field_number, content_type, content, version, created_at, updated_at"
)


def insert_content_version(
    user_id: str,
    page_id: str,
    field_number: Optional[int],
    content_type: str,
    content: str,
) -> Dict[str, Any]:
    """Append the next version for the logical key inside one write transaction.

    ``BEGIN IMMEDIATE`` serializes the read-max/insert pair across connections;
    the unique index turns any remaining collision into a retry.
    """
    last_error: Optional[sqlite3.Error] = None
    for _attempt in range(_VERSION_ATTEMPTS):
        now = now_iso()
        try:
            with _pool.transaction() as con:
                row = con.execute(
                    "SELECT COALESCE(MAX(version), 0) FROM content "
                    "WHERE user_id = ? AND page_id = ? AND field_number IS ?",
                    (user_id, page_id, field_number),
                ).fetchone()
                version = int(row[0]) + 1
                cur = con.execute(
                    """
                    INSERT INTO content(user_id, page_id, field_number, content_type, content,
                                        version, created_at, updated_at)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (user_id, page_id, field_number, content_type, content, version, now, now),
                )
                return {"id": int(cur.lastrowid), "version": version, "created_at": now}
        except sqlite3.IntegrityError as exc:
            last_error = exc
            continue
        except sqlite3.Error as exc:
            raise StorageError(f"could not save content: {exc}") from exc
    raise StorageError(f"could not allocate content version: {last_error}")


def get_latest_content(
    user_id: str, page_id: str, field_number: Optional[int] = None
) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT {_CONTENT_COLUMNS} FROM content
        WHERE user_id = ? AND page_id = ? AND field_number IS ?
        ORDER BY version DESC
        LIMIT 1
        """,
        (user_id, page_id, field_number),
    )
    return dict(rows[0]) if rows else None


def _latest_content_rows(user_id: str, page_clause: str, params: tuple, order_by: str) -> list[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT c.id, c.user_id, c.page_id, c.field_number, c.content_type, c.content,
               c.version, c.created_at, c.updated_at
        FROM content c
        JOIN (
            SELECT page_id, IFNULL(field_number, -1) AS field_key, MAX(version) AS max_version
            FROM content
            WHERE user_id = ? {page_clause}
            GROUP BY page_id, IFNULL(field_number, -1)
        ) latest
          ON c.page_id = latest.page_id
         AND IFNULL(c.field_number, -1) = latest.field_key
         AND c.version = latest.max_version
        WHERE c.user_id = ?
        ORDER BY {order_by}
        """,
        (user_id, *params, user_id),
    )
    return [dict(row) for row in rows]


def list_latest_content_for_page(user_id: str, page_id: str, *, prefix: bool = False) -> list[Dict[str, Any]]:
    if prefix:
        clause, params = "AND page_id LIKE ? ESCAPE '\\'", (_like_prefix(page_id),)
    else:
        clause, params = "AND page_id = ?", (page_id,)
    return _latest_content_rows(
        user_id, clause, params, "c.field_number ASC, c.created_at ASC, c.id ASC"
    )


def list_latest_content(user_id: str) -> list[Dict[str, Any]]:
    return _latest_content_rows(
        user_id, "", (), "c.page_id ASC, c.field_number ASC, c.created_at ASC, c.id ASC"
    )


def list_content_history(
    user_id: str, page_id: str, field_number: Optional[int] = None
) -> list[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT {_CONTENT_COLUMNS} FROM content
        WHERE user_id = ? AND page_id = ? AND field_number IS ?
        ORDER BY version DESC
        """,
        (user_id, page_id, field_number),
    )
    return [dict(row) for row in rows]


# -------------- timeline --------------
_TIMELINE_COLUMNS = "id, user_id, page_id, event_type, timestamp, duration, event_data"


def _timeline_row(row: sqlite3.Row) -> Dict[str, Any]:
    item = dict(row)
    item["event_data"] = _decode_json_field(item.get("event_data"))
    return item


def insert_timeline_event(
    user_id: str,
    page_id: Optional[str],
    event_type: str,
    duration: Optional[float] = None,
    event_data: Optional[Any] = None,
) -> int:
    stored_data = None if event_data is None else json_dumps(event_data)
    cur = _exec(
        """
        INSERT INTO timeline_events(user_id, page_id, event_type, timestamp, duration, event_data)
        VALUES (?,?,?,?,?,?)
        """,
        (user_id, page_id, event_type, now_iso(), duration, stored_data),
    )
    return int(cur.lastrowid)


def list_timeline_events(user_id: str, limit: Optional[int] = 100, *, ascending: bool = False) -> list[Dict[str, Any]]:
    direction = "ASC" if ascending else "DESC"
    sql = (
        f"SELECT {_TIMELINE_COLUMNS} FROM timeline_events WHERE user_id = ? "
        f"ORDER BY timestamp {direction}, id {direction}"
    )
    params: tuple = (user_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (user_id, int(limit))
    return [_timeline_row(row) for row in _query(sql, params)]


def list_combined_timeline(user_id: str, limit: int = 50) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT source, source_rank, id, user_id, page_id, event_type, timestamp, duration,
               event_data, run_id, question_id, question_text, answer_text, is_correct, points
        FROM combined_timeline
        WHERE user_id = ?
        ORDER BY timestamp DESC, source_rank ASC, id DESC
        LIMIT ?
        """,
        (user_id, int(limit)),
    )
    return [_timeline_row(row) for row in rows]


# -------------- external sync --------------
def upsert_sync_run(
    user_id: str,
    run_id: str,
    *,
    game_id: Optional[str],
    game_title: Optional[str] = None,
    started_at: Optional[str] = None,
    completed_at: Optional[str] = None,
    status: Optional[str] = None,
) -> None:
    _exec(
        """
        INSERT INTO sync_runs(user_id, run_id, game_id, game_title, started_at, completed_at, status, synced_at)
        VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(user_id, run_id) DO UPDATE SET
            game_id = excluded.game_id,
            game_title = COALESCE(excluded.game_title, sync_runs.game_title),
            started_at = excluded.started_at,
            completed_at = excluded.completed_at,
            status = excluded.status,
            synced_at = excluded.synced_at
        """,
        (user_id, run_id, game_id, game_title, started_at, completed_at, status or "active", now_iso()),
    )


def list_sync_runs(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT id, user_id, run_id, game_id, game_title, started_at, completed_at, status, synced_at "
        "FROM sync_runs WHERE user_id = ? ORDER BY id",
        (user_id,),
    )
    return [dict(row) for row in rows]


def upsert_sync_choice(
    user_id: str,
    run_id: str,
    question_id: str,
    *,
    question_text: Optional[str],
    answer_text: Optional[str],
    answer_value: Optional[str],
    is_correct: Optional[bool],
    points: Optional[float],
    timestamp: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Insert or replace the answer for (user, run, question). Returns True for a new row."""
    flag = None if is_correct is None else (1 if is_correct else 0)
    try:
        with _pool.transaction() as con:
            existing = con.execute(
                "SELECT 1 FROM sync_choices WHERE user_id = ? AND run_id = ? AND question_id = ?",
                (user_id, run_id, question_id),
            ).fetchone()
            con.execute(
                """
                INSERT INTO sync_choices(user_id, run_id, question_id, question_text, answer_text,
                                         answer_value, is_correct, points, timestamp, metadata, synced_at)
                VALUES (?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(user_id, run_id, question_id) DO UPDATE SET
                    question_text = excluded.question_text,
                    answer_text = excluded.answer_text,
                    answer_value = excluded.answer_value,
                    is_correct = excluded.is_correct,
                    points = excluded.points,
                    timestamp = excluded.timestamp,
                    metadata = excluded.metadata,
                    synced_at = excluded.synced_at
                """,
                (
                    user_id,
                    run_id,
                    question_id,
                    question_text,
                    answer_text,
                    answer_value,
                    flag,
                    points,
                    timestamp,
                    None if metadata is None else json_dumps(metadata),
                    now_iso(),
                ),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"could not store game choice: {exc}") from exc
    return existing is None


def list_sync_choices(user_id: str, run_id: Optional[str] = None, limit: int = 100) -> list[Dict[str, Any]]:
    columns = (
        "id, user_id, run_id, question_id, question_text, answer_text, answer_value, "
        "is_correct, points, timestamp, metadata, synced_at"
    )
    if run_id:
        rows = _query(
            f"SELECT {columns} FROM sync_choices WHERE user_id = ? AND run_id = ? "
            "ORDER BY timestamp DESC, id DESC",
            (user_id, run_id),
        )
    else:
        rows = _query(
            f"SELECT {columns} FROM sync_choices WHERE user_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (user_id, int(limit)),
        )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["metadata"] = _decode_json_field(item.get("metadata"))
        if item.get("is_correct") is not None:
            item["is_correct"] = bool(item["is_correct"])
        data.append(item)
    return data


def count_sync_rows(user_id: str) -> Dict[str, int]:
    runs = _query("SELECT COUNT(*) FROM sync_runs WHERE user_id = ?", (user_id,))
    choices = _query("SELECT COUNT(*) FROM sync_choices WHERE user_id = ?", (user_id,))
    return {"runs": int(runs[0][0]), "choices": int(choices[0][0])}


# -------------- external tokens --------------
def get_token_row(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, token, created_at, expires_at FROM external_tokens WHERE user_id = ?",
        (user_id,),
    )
    return dict(rows[0]) if rows else None


def set_token_row(user_id: str, token: str, created_at: str, expires_at: str) -> None:
    _exec(
        """
        INSERT INTO external_tokens(user_id, token, created_at, expires_at) VALUES (?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
            token = excluded.token,
            created_at = excluded.created_at,
            expires_at = excluded.expires_at
        """,
        (user_id, token, created_at, expires_at),
    )


def delete_token_row(user_id: str) -> None:
    _exec("DELETE FROM external_tokens WHERE user_id = ?", (user_id,))


# -------------- reading checks --------------
def insert_cbm_result(
    user_id: str,
    text_id: str,
    text_title: Optional[str],
    total_questions: int,
    total_answered: int,
    correct_answers: int,
    accuracy: float,
    time_spent: float,
    wcpm: float,
    answers: Optional[Any] = None,
) -> Dict[str, Any]:
    completed_at = now_iso()
    cur = _exec(
        """
        INSERT INTO cbm_results(user_id, text_id, text_title, total_questions, total_answered,
                                correct_answers, accuracy, time_spent, wcpm, answers, completed_at)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            user_id,
            text_id,
            text_title,
            total_questions,
            total_answered,
            correct_answers,
            accuracy,
            time_spent,
            wcpm,
            json_dumps(answers if answers is not None else {}),
            completed_at,
        ),
    )
    return {"id": int(cur.lastrowid), "completed_at": completed_at}


def list_cbm_results(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, user_id, text_id, text_title, total_questions, total_answered, correct_answers,
               accuracy, time_spent, wcpm, answers, completed_at
          FROM cbm_results
         WHERE user_id = ?
         ORDER BY completed_at DESC, id DESC
        """,
        (user_id,),
    )
    data = []
    for row in rows:
        item = dict(row)
        item["answers"] = _decode_json_field(item.get("answers"))
        data.append(item)
    return data


def cbm_stats(user_id: str) -> Dict[str, float]:
    rows = _query(
        """
        SELECT COUNT(*) AS total_attempts,
               AVG(accuracy) AS avg_accuracy,
               AVG(wcpm) AS avg_wcpm,
               MAX(wcpm) AS best_wcpm,
               MAX(accuracy) AS best_accuracy
          FROM cbm_results
         WHERE user_id = ?
        """,
        (user_id,),
    )
    row = dict(rows[0]) if rows else {}
    return {key: (value or 0) for key, value in row.items()}


# -------------- reporting --------------
def dashboard_counts(active_since: str) -> Dict[str, int]:
    def _scalar(sql: str, params: Iterable = ()) -> int:
        rows = _query(sql, params)
        return int(rows[0][0] or 0) if rows else 0

    return {
        "totalUsers": _scalar("SELECT COUNT(*) FROM users"),
        "activeUsers": _scalar("SELECT COUNT(*) FROM users WHERE last_active >= ?", (active_since,)),
        "totalContent": _scalar("SELECT COUNT(*) FROM content"),
        "totalEvents": _scalar("SELECT COUNT(*) FROM timeline_events"),
        "finalAssignments": _scalar(
            "SELECT COUNT(DISTINCT user_id) FROM content WHERE content_type = 'assignment_field'"
        ),
        "syncedChoices": _scalar("SELECT COUNT(*) FROM sync_choices"),
    }
