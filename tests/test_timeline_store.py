import pytest

import db
import timeline
from errors import ValidationError


def _insert_event(user_id, event_type, timestamp, duration=None, page_id="p"):
    db.ensure_user(user_id)
    cur = db._exec(
        "INSERT INTO timeline_events(user_id, page_id, event_type, timestamp, duration, event_data) "
        "VALUES (?,?,?,?,?,NULL)",
        (user_id, page_id, event_type, timestamp, duration),
    )
    return int(cur.lastrowid)


def _insert_choice(user_id, run_id, question_id, timestamp):
    db.ensure_user(user_id)
    db.upsert_sync_choice(
        user_id,
        run_id,
        question_id,
        question_text="Q",
        answer_text="A",
        answer_value="a",
        is_correct=True,
        points=1.0,
        timestamp=timestamp,
        metadata={"itemId": question_id},
    )


def test_page_open_then_close_scenario(temp_db):
    open_id = timeline.log_event(
        "u1", "level1_intro", "page_open", payload={"url": "/level1", "screenWidth": 1280}
    )
    close_id = timeline.log_event(
        "u1", "level1_intro", "page_close", duration=42, payload={"reason": "navigate"}
    )

    events = timeline.list_events("u1")
    assert [event["id"] for event in events] == [close_id, open_id]
    assert events[0]["duration"] == 42
    assert events[1]["event_data"] == {"url": "/level1", "screenWidth": 1280}

    ascending = timeline.list_events("u1", ascending=True)
    assert [event["event_type"] for event in ascending] == ["page_open", "page_close"]


def test_unknown_event_types_are_stored_verbatim(temp_db):
    payload = {"anything": [1, 2, {"nested": True}]}
    event_id = timeline.log_event("u1", None, "scroll_depth", payload=payload)

    stored = timeline.list_events("u1")[0]
    assert stored["id"] == event_id
    assert stored["event_type"] == "scroll_depth"
    assert stored["page_id"] is None
    assert stored["event_data"] == payload


def test_known_payloads_keep_extra_keys(temp_db):
    timeline.log_event("u1", "p", "link_click", payload={"href": "/x", "linkText": "Go", "custom": 1})
    assert timeline.list_events("u1")[0]["event_data"] == {"href": "/x", "linkText": "Go", "custom": 1}


def test_known_payloads_are_validated(temp_db):
    with pytest.raises(ValidationError):
        timeline.log_event("u1", "p", "page_open", payload={"screenWidth": "wide"})
    with pytest.raises(ValidationError):
        timeline.log_event("u1", "p", "click", payload=["not", "an", "object"])
    assert timeline.list_events("u1") == []


@pytest.mark.parametrize("duration", [-1, "soon", float("nan"), True])
def test_duration_must_be_non_negative_number(temp_db, duration):
    with pytest.raises(ValidationError):
        timeline.log_event("u1", "p", "page_close", duration=duration)


def test_event_type_and_user_are_required(temp_db):
    with pytest.raises(ValidationError):
        timeline.log_event("u1", "p", "")
    with pytest.raises(ValidationError):
        timeline.log_event(None, "p", "page_open")


def test_listing_orders_ties_by_id(temp_db):
    first = _insert_event("u1", "click", "2024-06-01T10:00:00.000000Z")
    second = _insert_event("u1", "click", "2024-06-01T10:00:00.000000Z")
    older = _insert_event("u1", "click", "2024-06-01T09:00:00.000000Z")

    assert [e["id"] for e in timeline.list_events("u1")] == [second, first, older]
    assert [e["id"] for e in timeline.list_events_ascending("u1")] == [older, first, second]
    assert [e["id"] for e in timeline.list_events("u1", limit=1)] == [second]


def test_unknown_user_has_empty_timelines(temp_db):
    assert timeline.list_events("ghost") == []
    assert timeline.get_combined_timeline("ghost") == []


def test_combined_timeline_merges_sources(temp_db):
    app_id = _insert_event("u1", "page_open", "2024-06-01T10:00:00.000000Z")
    _insert_choice("u1", "101", "5001", "2024-06-01T10:05:00.000000Z")
    _insert_event("u2", "page_open", "2024-06-01T11:00:00.000000Z")

    entries = timeline.get_combined_timeline("u1")
    assert [entry["source"] for entry in entries] == ["bibendo_game", "app"]

    game = entries[0]
    assert game["event_type"] == "game_choice"
    assert game["page_id"] == "bibendo_run:101"
    assert game["is_correct"] is True
    assert game["event_data"] == {"itemId": "5001"}
    assert entries[1]["event_key"] == f"app:{app_id}"
    assert "run_id" not in entries[1]


def test_combined_timeline_ties_are_stable(temp_db):
    stamp = "2024-06-01T10:00:00.000000Z"
    _insert_choice("u1", "101", "q1", stamp)
    first_app = _insert_event("u1", "click", stamp)
    second_app = _insert_event("u1", "click", stamp)

    keys = [entry["event_key"] for entry in timeline.get_combined_timeline("u1")]
    assert keys[:2] == [f"app:{second_app}", f"app:{first_app}"]
    assert keys[2].startswith("bibendo_game:")
    assert keys == [entry["event_key"] for entry in timeline.get_combined_timeline("u1")]
    assert len(set(keys)) == len(keys)


def test_combined_timeline_limit(temp_db):
    for minute in range(5):
        _insert_event("u1", "click", f"2024-06-01T10:0{minute}:00.000000Z")
    entries = timeline.get_combined_timeline("u1", limit=2)
    assert [entry["timestamp"] for entry in entries] == [
        "2024-06-01T10:04:00.000000Z",
        "2024-06-01T10:03:00.000000Z",
    ]


def test_group_by_day_uses_amsterdam_calendar():
    events = [
        {"id": 3, "timestamp": "2024-06-01T22:30:00.000000Z", "event_type": "page_open"},
        {"id": 1, "timestamp": "2024-06-01T08:00:00.000000Z", "event_type": "page_open"},
        {"id": 2, "timestamp": "2024-06-01T09:00:00.000000Z", "event_type": "page_close", "duration": 60},
        {"id": 4, "timestamp": "not a time", "event_type": "click"},
    ]
    grouped = timeline.group_by_day(events, "Europe/Amsterdam")

    assert list(grouped) == ["2024-06-02", "2024-06-01"]
    assert [event["id"] for event in grouped["2024-06-01"]] == [1, 2]
    assert [event["id"] for event in grouped["2024-06-02"]] == [3]


def test_group_by_day_rejects_unknown_zone():
    with pytest.raises(ValidationError):
        timeline.group_by_day([], "Mars/Olympus_Mons")


def test_total_time_sums_page_close_durations():
    events = [
        {"event_type": "page_close", "duration": 30},
        {"event_type": "page_close", "duration": 12.5},
        {"event_type": "page_open", "duration": 99},
        {"event_type": "page_close", "duration": None},
    ]
    assert timeline.total_time_spent(events) == 42.5


def test_time_spent_log_is_a_page_close(temp_db):
    event_id = timeline.log_time_spent("u1", "level3_intro", "12.5")
    event = timeline.list_events("u1")[0]
    assert event["id"] == event_id
    assert (event["event_type"], event["duration"]) == ("page_close", 12.5)

    for page, seconds in (("", 10), ("level3_intro", None), ("level3_intro", 0)):
        with pytest.raises(ValidationError):
            timeline.log_time_spent("u1", page, seconds)


def test_text_action_requires_an_action_type(temp_db):
    with pytest.raises(ValidationError):
        timeline.log_text_action("u1", "p", " ")
    event_id = timeline.log_text_action("u1", "p", "select", None)
    assert timeline.list_events("u1")[0]["id"] == event_id
