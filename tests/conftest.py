import asyncio
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    previous = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous


class FakeGameApi:
    """In-memory stand-in for :class:`game_api.GameApiClient`."""

    def __init__(self, games=None, runs=None, items=None, responses=None, account=None):
        self.games = games or []
        self.runs = runs or {}
        self.items = items or {}
        self.responses = responses or {}
        self.account = account or {"localId": "learner-1"}
        self.valid_tokens = {"good-token"}
        self.failures = {}
        self.calls = []
        self.base_url = "https://game.test/api"

    def _maybe_fail(self, key):
        error = self.failures.get(key)
        if error is not None:
            raise error

    async def account_details(self, token):
        self.calls.append(("account", token))
        self._maybe_fail("account")
        return dict(self.account)

    async def check_token(self, token):
        self.calls.append(("check", token))
        return token in self.valid_tokens

    async def list_games(self, token):
        self.calls.append(("games", token))
        self._maybe_fail("games")
        return list(self.games)

    async def list_runs(self, token, game_id):
        self.calls.append(("runs", game_id))
        self._maybe_fail(("runs", game_id))
        return list(self.runs.get(game_id, []))

    async def list_items(self, token, game_id):
        self.calls.append(("items", game_id))
        self._maybe_fail(("items", game_id))
        return list(self.items.get(game_id, []))

    async def list_responses(self, token, run_id, item_id):
        self.calls.append(("responses", run_id, item_id))
        self._maybe_fail(("responses", run_id, item_id))
        return list(self.responses.get((run_id, item_id), []))


@pytest.fixture
def fake_game_api():
    games = [{"gameId": 11, "title": "Escape the Lab"}, {"gameId": 22, "title": "Budget Quest"}]
    runs = {
        "11": [{"runId": 101, "startedAt": 1717236000000, "status": "completed"}],
        "22": [{"runId": 202, "startedAt": "2024-06-02T09:00:00Z"}],
    }
    items = {
        "11": [
            {
                "id": 5001,
                "type": "MultipleChoiceTest",
                "name": "q1",
                "text": "Which budget item is fixed?",
                "answers": [
                    {"id": "a", "answer": "Rent", "isCorrect": True, "points": 10},
                    {"id": "b", "answer": "Groceries", "isCorrect": False, "points": 0},
                ],
            },
            {"id": 5002, "type": "TextQuestion", "name": "q2", "text": "Explain your choice"},
        ],
        "22": [
            {
                "id": 6001,
                "type": "SingleChoiceTest",
                "title": "Save or spend?",
                "answers": [{"id": "save", "answer": "Save", "isCorrect": True, "points": 5}],
            }
        ],
    }
    responses = {
        ("101", "5001"): [
            {"generalItemId": 5001, "responseValue": "a", "responseId": 1, "timestamp": 1717236060000}
        ],
        ("101", "5002"): [
            {"generalItemId": 5002, "responseValue": "Because it never changes", "responseId": 2, "timestamp": 1717236120000}
        ],
        ("202", "6001"): [
            {"generalItemId": 6001, "responseValue": "save", "responseId": 3, "timestamp": "2024-06-02T09:05:00Z"}
        ],
    }
    return FakeGameApi(games=games, runs=runs, items=items, responses=responses)


def slowed(func, seconds=0.3):
    """Wrap a blocking call so it holds its thread for ``seconds`` first."""

    def _slow(*args, **kwargs):
        time.sleep(seconds)
        return func(*args, **kwargs)

    return _slow


def run_with_loop_gap(coro_factory, interval=0.02):
    """Run ``coro_factory()`` next to a ticker; return its result and the longest tick gap."""

    async def _main():
        loop = asyncio.get_running_loop()
        done = asyncio.Event()
        gaps = []

        async def _tick():
            last = loop.time()
            while not done.is_set():
                await asyncio.sleep(interval)
                now = loop.time()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(_tick())
        await asyncio.sleep(0)
        try:
            outcome = await coro_factory()
        except Exception as exc:
            outcome = exc
        finally:
            done.set()
            await ticker
        return outcome, max(gaps, default=0.0)

    return asyncio.run(_main())
