# ABOUTME: Tests the in-memory store's transactions and table conversion helpers.
# ABOUTME: Staged writes must commit together or not at all.

from datetime import date, datetime, timedelta, timezone

import pandas as pd
import pytest

from src.common.enums import BehaviorType, StudyTimeStatus
from src.common.errors import MalformedEventError
from src.common.schemas import BehaviorEvent, DeviceActivity, EffectiveStudyRecord, SessionWindow
from src.common.store import (
    InMemoryStore,
    UnknownEntityError,
    derive_device_activity,
    events_from_frame,
    events_to_frame,
    load_table,
    records_to_frame,
    sessions_from_frame,
)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _mk_record(record_id, session_id="s1", effective=600.0):
    return EffectiveStudyRecord(
        record_id=record_id,
        user_id="u1",
        session_id=session_id,
        course_id="c1",
        lesson_id="l1",
        study_date=date(2024, 3, 4),
        start_time=T0,
        end_time=T0 + timedelta(seconds=600),
        total_duration=600.0,
        effective_duration=effective,
        invalid_duration=600.0 - effective,
        status=StudyTimeStatus.VALID,
    )


def test_transaction_commits_on_success():
    store = InMemoryStore()
    with store.transaction():
        store.persist_record(_mk_record("r1"))
        assert store.fetch_session_records("s1")[0].record_id == "r1"
    assert [r.record_id for r in store.fetch_all_records()] == ["r1"]


def test_transaction_discards_writes_on_error():
    store = InMemoryStore()
    store.persist_record(_mk_record("r0"))
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.persist_record(_mk_record("r1"))
            store.persist_classification("s1", [_mk_record("r2")])
            raise RuntimeError("boom")
    assert [r.record_id for r in store.fetch_all_records()] == ["r0"]


def test_nested_transaction_joins_outer():
    store = InMemoryStore()
    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                store.persist_record(_mk_record("r1"))
            raise RuntimeError("outer failure")
    assert store.fetch_all_records() == []


def test_classification_replaces_stale_records():
    store = InMemoryStore()
    store.persist_classification("s1", [_mk_record("s1:2024-03-04"), _mk_record("s1:2024-03-05")])
    store.persist_record(_mk_record("s2:2024-03-04", session_id="s2"))
    with store.transaction():
        store.persist_classification("s1", [_mk_record("s1:2024-03-04", effective=300.0)])

    (only,) = store.fetch_session_records("s1")
    assert only.effective_duration == 300.0
    assert len(store.fetch_session_records("s2")) == 1


def test_unknown_session_raises():
    store = InMemoryStore()
    with pytest.raises(UnknownEntityError):
        store.fetch_session_window("missing")
    with pytest.raises(KeyError):
        store.fetch_events("missing")


def test_events_round_trip_through_frames():
    events = [
        BehaviorEvent("s1", BehaviorType.PLAY, T0, video_position=0.0, device_fingerprint="fp-1"),
        BehaviorEvent("s1", BehaviorType.PAUSE, T0 + timedelta(seconds=30), payload={"reason": "user"}),
    ]
    parsed = events_from_frame(events_to_frame(events))
    assert [e.behavior_type for e in parsed] == [BehaviorType.PLAY, BehaviorType.PAUSE]
    assert parsed[0].device_fingerprint == "fp-1"
    assert parsed[1].payload == {"reason": "user"}
    assert parsed[1].timestamp == T0 + timedelta(seconds=30)


def test_unknown_behavior_type_is_malformed():
    frame = pd.DataFrame({"session_id": ["s1"], "behavior_type": ["teleport"], "timestamp": [T0]})
    with pytest.raises(MalformedEventError):
        events_from_frame(frame)


def test_sessions_keep_extra_columns_as_metadata():
    frame = pd.DataFrame(
        {
            "session_id": ["s1"],
            "user_id": ["u1"],
            "course_id": ["c1"],
            "lesson_id": ["l1"],
            "start": ["2024-03-04T09:00:00"],
            "end": [None],
            "course_test_required": [True],
        }
    )
    (window,) = sessions_from_frame(frame)
    assert window.start == T0
    assert window.end is None
    assert window.metadata == {"course_test_required": True}


def test_derived_device_activity_uses_first_fingerprint():
    windows = [
        SessionWindow("s1", "u1", "c1", "l1", T0, T0 + timedelta(hours=1)),
        SessionWindow("s2", "u1", "c1", "l1", T0, None),
    ]
    events = [
        BehaviorEvent("s1", BehaviorType.PLAY, T0 + timedelta(seconds=5), device_fingerprint="laptop"),
        BehaviorEvent("s2", BehaviorType.PLAY, T0 + timedelta(seconds=9)),
    ]
    activity = derive_device_activity(windows, events)
    assert [(a.device_id, a.end) for a in activity] == [
        ("laptop", T0 + timedelta(hours=1)),
        ("s2", T0 + timedelta(seconds=9)),
    ]


def test_records_frame_and_table_loading(tmp_path):
    frame = records_to_frame([_mk_record("r1")])
    assert frame.loc[0, "status"] == "valid"

    csv_path = tmp_path / "sessions.csv"
    csv_path.write_text("session_id,user_id,start\ns1,u1,2024-03-04 09:00:00\n")
    loaded = load_table(csv_path)
    assert list(loaded["session_id"]) == ["s1"]

    with pytest.raises(ValueError):
        load_table(tmp_path / "sessions.xlsx")


def test_device_queries_filter_by_user_and_time():
    store = InMemoryStore(
        device_activity=[
            DeviceActivity("u1", "laptop", T0, T0 + timedelta(hours=1)),
            DeviceActivity("u1", "phone", T0 + timedelta(minutes=30), T0 + timedelta(hours=2)),
            DeviceActivity("u2", "tablet", T0, T0 + timedelta(hours=2)),
        ]
    )
    assert store.fetch_active_device_set("u1", T0 + timedelta(minutes=45), T0 + timedelta(minutes=50)) == {"laptop", "phone"}
    assert store.fetch_active_device_set("u1", T0 + timedelta(hours=1), T0 + timedelta(hours=1, minutes=30)) == {"phone"}
    assert store.fetch_active_device_set("u1", T0 - timedelta(minutes=10), T0) == set()
    assert store.fetch_active_device_set("u1", T0 + timedelta(hours=2), T0 + timedelta(hours=3)) == set()
    overlapping = store.fetch_device_activity("u1", T0 + timedelta(hours=1, minutes=30), T0 + timedelta(hours=3))
    assert [a.device_id for a in overlapping] == ["phone"]


def test_store_loads_sessions_events_and_devices_from_files(tmp_path):
    pd.DataFrame(
        {
            "session_id": ["s1"],
            "user_id": ["u1"],
            "course_id": ["c1"],
            "lesson_id": ["l1"],
            "start": [T0],
            "end": [T0 + timedelta(hours=1)],
        }
    ).to_parquet(tmp_path / "sessions.parquet", index=False)
    pd.DataFrame(
        {
            "session_id": ["s1", "s1"],
            "behavior_type": ["play", "time_update"],
            "timestamp": [T0 + timedelta(seconds=5), T0 + timedelta(seconds=65)],
        }
    ).to_parquet(tmp_path / "events.parquet", index=False)
    pd.DataFrame(
        {
            "user_id": ["u1"],
            "device_id": ["tablet"],
            "start": [T0],
            "end": [T0 + timedelta(hours=1)],
        }
    ).to_parquet(tmp_path / "devices.parquet", index=False)

    store = InMemoryStore.from_files(
        tmp_path / "sessions.parquet", tmp_path / "events.parquet", tmp_path / "devices.parquet"
    )
    assert store.fetch_session_window("s1").end == T0 + timedelta(hours=1)
    assert [e.behavior_type for e in store.fetch_events("s1")] == [BehaviorType.PLAY, BehaviorType.TIME_UPDATE]
    assert store.fetch_active_device_set("u1", T0, T0 + timedelta(hours=1)) == {"tablet"}

    derived = InMemoryStore.from_files(tmp_path / "sessions.parquet", tmp_path / "events.parquet")
    assert derived.fetch_active_device_set("u1", T0, T0 + timedelta(hours=1)) == {"s1"}
