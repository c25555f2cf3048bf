import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import db
from conftest import FakeGameApi, run_with_loop_gap, slowed
from errors import ValidationError
from tokens import TokenStore, set_external_token


class _Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


def test_token_expires_lazily(temp_db):
    clock = _Clock(datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))
    store = TokenStore(ttl_minutes=30, clock=clock)

    expiry = store.set("u1", "secret")
    assert expiry == "2024-06-01T10:30:00.000000Z"
    assert store.get("u1") == "secret"

    clock.now += timedelta(minutes=29)
    assert store.get("u1") == "secret"

    clock.now += timedelta(minutes=1)
    assert store.get("u1") is None
    # The expired row is gone, not just hidden.
    assert db.get_token_row("u1") is None


def test_set_replaces_previous_token(temp_db):
    store = TokenStore(ttl_minutes=30)
    store.set("u1", "first")
    store.set("u1", "second")
    assert store.get("u1") == "second"


def test_invalidate_removes_token(temp_db):
    store = TokenStore()
    store.set("u1", "secret")
    store.invalidate("u1")
    assert store.get("u1") is None


def test_ttl_comes_from_environment(temp_db, monkeypatch):
    monkeypatch.setenv("TOKEN_TTL_MINUTES", "5")
    clock = _Clock(datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))
    store = TokenStore(clock=clock)
    assert store.set("u1", "secret") == "2024-06-01T10:05:00.000000Z"


def test_invalid_token_is_not_stored(temp_db):
    store = TokenStore()
    client = FakeGameApi()

    validated = asyncio.run(set_external_token("u1", "bad-token", store=store, client=client))

    assert validated is False
    assert store.get("u1") is None
    assert db.get_user("u1") is not None


def test_valid_token_is_stored(temp_db):
    store = TokenStore()
    client = FakeGameApi()

    validated = asyncio.run(set_external_token("u1", " good-token ", store=store, client=client))

    assert validated is True
    assert store.get("u1") == "good-token"


def test_empty_token_is_rejected(temp_db):
    with pytest.raises(ValidationError):
        asyncio.run(set_external_token("u1", "  ", store=TokenStore(), client=FakeGameApi()))


def test_storing_a_token_keeps_the_event_loop_free(temp_db, monkeypatch):
    store = TokenStore()
    monkeypatch.setattr(db, "ensure_user", slowed(db.ensure_user))
    monkeypatch.setattr(store, "set", slowed(store.set))

    validated, gap = run_with_loop_gap(
        lambda: set_external_token("u1", "good-token", store=store, client=FakeGameApi())
    )

    assert validated is True
    assert gap < 0.25
    assert store.get("u1") == "good-token"
