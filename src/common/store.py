# ABOUTME: Storage boundary for sessions, events, records, and anomalies plus tabular loaders.
# ABOUTME: InMemoryStore applies each transaction all-or-nothing; frames convert via pandas/pyarrow.

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Set

import pandas as pd
import pyarrow.csv as pv

from .enums import BehaviorType
from .errors import MalformedEventError, StudyTimeError
from .schemas import BehaviorEvent, DeviceActivity, EffectiveStudyRecord, LearnAnomaly, SessionWindow

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "session_id",
    "behavior_type",
    "timestamp",
    "video_position",
    "payload",
    "device_fingerprint",
    "ip_address",
    "user_id",
]
SESSION_COLUMNS = ["session_id", "user_id", "course_id", "lesson_id", "start", "end"]


class UnknownEntityError(StudyTimeError, KeyError):
    """Raised when a lookup names a session, record, or anomaly the store does not hold."""


class StudyTimeStore(Protocol):
    """What the engine needs from persistence."""

    def fetch_session_window(self, session_id: str) -> SessionWindow: ...

    def fetch_events(self, session_id: str) -> List[BehaviorEvent]: ...

    def fetch_device_activity(self, user_id: str, start: datetime, end: datetime) -> List[DeviceActivity]: ...

    def fetch_active_device_set(self, user_id: str, start: datetime, end: datetime) -> Set[str]: ...

    def fetch_daily_records(self, user_id: str, day: date) -> List[EffectiveStudyRecord]: ...

    def fetch_session_records(self, session_id: str) -> List[EffectiveStudyRecord]: ...

    def fetch_anomaly(self, anomaly_id: str) -> Optional[LearnAnomaly]: ...

    def fetch_session_anomalies(self, session_id: str) -> List[LearnAnomaly]: ...

    def persist_classification(self, session_id: str, records: Sequence[EffectiveStudyRecord]) -> None: ...

    def persist_record(self, record: EffectiveStudyRecord) -> None: ...

    def persist_anomaly(self, anomaly: LearnAnomaly) -> None: ...

    def transaction(self): ...


class _Working:
    """Copy-on-write view of the mutable tables for one open transaction."""

    def __init__(self, records: Dict[str, EffectiveStudyRecord], anomalies: Dict[str, LearnAnomaly]):
        self.records = dict(records)
        self.anomalies = dict(anomalies)
        self.touched_records: Set[str] = set()
        self.dropped_records: Set[str] = set()
        self.touched_anomalies: Set[str] = set()


class InMemoryStore:
    """
    Dict-backed store used by the CLI and tests.

    Writes inside ``transaction()`` are staged per thread and applied together on
    exit; an exception discards them. Writes outside a transaction apply at once.
    """

    def __init__(
        self,
        sessions: Iterable[SessionWindow] = (),
        events: Iterable[BehaviorEvent] = (),
        device_activity: Iterable[DeviceActivity] = (),
    ):
        self._sessions: Dict[str, SessionWindow] = {}
        self._events: Dict[str, List[BehaviorEvent]] = {}
        self._devices: List[DeviceActivity] = []
        self._records: Dict[str, EffectiveStudyRecord] = {}
        self._anomalies: Dict[str, LearnAnomaly] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

        for window in sessions:
            self.add_session(window)
        for event in events:
            self.add_event(event)
        self._devices.extend(device_activity)

    # -- ingestion ---------------------------------------------------------

    def add_session(self, window: SessionWindow) -> None:
        with self._lock:
            self._sessions[window.session_id] = window
            self._events.setdefault(window.session_id, [])

    def add_event(self, event: BehaviorEvent) -> None:
        with self._lock:
            self._events.setdefault(event.session_id, []).append(event)

    def add_device_activity(self, activity: DeviceActivity) -> None:
        with self._lock:
            self._devices.append(activity)

    @property
    def session_ids(self) -> List[str]:
        return sorted(self._sessions)

    # -- transaction -------------------------------------------------------

    def _working(self) -> Optional[_Working]:
        return getattr(self._local, "working", None)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        if self._working() is not None:
            # Nested scopes join the outer transaction.
            yield self
            return
        with self._lock:
            working = _Working(self._records, self._anomalies)
        self._local.working = working
        try:
            yield self
        except BaseException:
            logger.debug("Rolling back %d staged records", len(working.touched_records))
            raise
        else:
            with self._lock:
                for record_id in working.dropped_records:
                    self._records.pop(record_id, None)
                for record_id in working.touched_records:
                    self._records[record_id] = working.records[record_id]
                for anomaly_id in working.touched_anomalies:
                    self._anomalies[anomaly_id] = working.anomalies[anomaly_id]
        finally:
            self._local.working = None

    def _record_table(self) -> Dict[str, EffectiveStudyRecord]:
        working = self._working()
        return working.records if working is not None else self._records

    def _anomaly_table(self) -> Dict[str, LearnAnomaly]:
        working = self._working()
        return working.anomalies if working is not None else self._anomalies

    # -- reads -------------------------------------------------------------

    def fetch_session_window(self, session_id: str) -> SessionWindow:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown session '{session_id}'.") from None

    def fetch_events(self, session_id: str) -> List[BehaviorEvent]:
        if session_id not in self._sessions:
            raise UnknownEntityError(f"Unknown session '{session_id}'.")
        return sorted(self._events.get(session_id, []), key=lambda e: e.timestamp)

    def fetch_device_activity(self, user_id: str, start: datetime, end: datetime) -> List[DeviceActivity]:
        return [a for a in self._devices if a.user_id == user_id and a.start < end and a.end > start]

    def fetch_active_device_set(self, user_id: str, start: datetime, end: datetime) -> Set[str]:
        """Devices active for the user at any point in [start, end)."""
        return {a.device_id for a in self.fetch_device_activity(user_id, start, end)}

    def fetch_daily_records(self, user_id: str, day: date) -> List[EffectiveStudyRecord]:
        records = [r for r in self._record_table().values() if r.user_id == user_id and r.study_date == day]
        return sorted(records, key=lambda r: (r.start_time, r.record_id))

    def fetch_session_records(self, session_id: str) -> List[EffectiveStudyRecord]:
        records = [r for r in self._record_table().values() if r.session_id == session_id]
        return sorted(records, key=lambda r: r.start_time)

    def fetch_all_records(self) -> List[EffectiveStudyRecord]:
        return sorted(self._record_table().values(), key=lambda r: (r.user_id, r.start_time, r.record_id))

    def fetch_anomaly(self, anomaly_id: str) -> Optional[LearnAnomaly]:
        return self._anomaly_table().get(anomaly_id)

    def fetch_session_anomalies(self, session_id: str) -> List[LearnAnomaly]:
        anomalies = [a for a in self._anomaly_table().values() if a.session_id == session_id]
        return sorted(anomalies, key=lambda a: (a.detect_time, a.anomaly_id))

    def fetch_all_anomalies(self) -> List[LearnAnomaly]:
        return sorted(self._anomaly_table().values(), key=lambda a: (a.detect_time, a.anomaly_id))

    # -- writes ------------------------------------------------------------

    def persist_classification(self, session_id: str, records: Sequence[EffectiveStudyRecord]) -> None:
        """Replace the session's record set with ``records``."""

        keep = {r.record_id for r in records}
        table = self._record_table()
        working = self._working()
        with self._lock:
            stale = [rid for rid, r in table.items() if r.session_id == session_id and rid not in keep]
            for record_id in stale:
                del table[record_id]
                if working is not None:
                    working.dropped_records.add(record_id)
                    working.touched_records.discard(record_id)
            for record in records:
                self._put_record(record)

    def persist_record(self, record: EffectiveStudyRecord) -> None:
        with self._lock:
            self._put_record(record)

    def _put_record(self, record: EffectiveStudyRecord) -> None:
        self._record_table()[record.record_id] = record
        working = self._working()
        if working is not None:
            working.touched_records.add(record.record_id)
            working.dropped_records.discard(record.record_id)

    def persist_anomaly(self, anomaly: LearnAnomaly) -> None:
        with self._lock:
            self._anomaly_table()[anomaly.anomaly_id] = anomaly
            working = self._working()
            if working is not None:
                working.touched_anomalies.add(anomaly.anomaly_id)

    @classmethod
    def from_files(
        cls,
        sessions_path: Path,
        events_path: Path,
        devices_path: Optional[Path] = None,
    ) -> "InMemoryStore":
        """Load session, event, and optional device activity tables (parquet or CSV)."""

        windows = load_sessions(sessions_path)
        behavior = load_events(events_path)
        if devices_path is not None:
            activity = load_device_activity(devices_path)
        else:
            activity = derive_device_activity(windows, behavior)
        return cls(windows, behavior, activity)


# -- frame conversion --------------------------------------------------------


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or (not isinstance(value, datetime) and pd.isna(value)):
        return None
    stamp = pd.Timestamp(value)
    if stamp is pd.NaT:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return stamp.to_pydatetime()


def _optional(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    return value


def _payload(value: Any) -> Mapping[str, Any]:
    value = _optional(value)
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    text = str(value).strip()
    return json.loads(text) if text else {}


def events_from_frame(frame: pd.DataFrame) -> List[BehaviorEvent]:
    """Convert a behavior-event table to events ordered by (session_id, timestamp)."""

    missing = {"session_id", "behavior_type", "timestamp"} - set(frame.columns)
    if missing:
        raise ValueError(f"Event table is missing columns: {sorted(missing)}")

    df = frame.copy()
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df = df.sort_values(["session_id", "timestamp"], kind="mergesort").reset_index(drop=True)

    events = []
    for row in df.to_dict(orient="records"):
        session_id = str(row["session_id"])
        try:
            behavior = BehaviorType(str(row["behavior_type"]))
        except ValueError:
            raise MalformedEventError(f"Unknown behavior type '{row['behavior_type']}'.", session_id) from None
        position = _optional(row.get("video_position"))
        events.append(
            BehaviorEvent(
                session_id=session_id,
                behavior_type=behavior,
                timestamp=_timestamp(row["timestamp"]),
                video_position=float(position) if position is not None else None,
                payload=_payload(row.get("payload")),
                device_fingerprint=_optional(row.get("device_fingerprint")),
                ip_address=_optional(row.get("ip_address")),
                user_id=_optional(row.get("user_id")),
            )
        )
    return events


def events_to_frame(events: Sequence[BehaviorEvent]) -> pd.DataFrame:
    rows = [
        {
            "session_id": e.session_id,
            "behavior_type": e.behavior_type.value,
            "timestamp": e.timestamp,
            "video_position": e.video_position,
            "payload": json.dumps(dict(e.payload), sort_keys=True) if e.payload else None,
            "device_fingerprint": e.device_fingerprint,
            "ip_address": e.ip_address,
            "user_id": e.user_id,
        }
        for e in events
    ]
    frame = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame


def sessions_from_frame(frame: pd.DataFrame) -> List[SessionWindow]:
    missing = {"session_id", "user_id", "start"} - set(frame.columns)
    if missing:
        raise ValueError(f"Session table is missing columns: {sorted(missing)}")

    extra = [c for c in frame.columns if c not in SESSION_COLUMNS]
    windows = []
    for row in frame.to_dict(orient="records"):
        windows.append(
            SessionWindow(
                session_id=str(row["session_id"]),
                user_id=str(row["user_id"]),
                course_id=str(_optional(row.get("course_id")) or ""),
                lesson_id=str(_optional(row.get("lesson_id")) or ""),
                start=_timestamp(row["start"]),
                end=_timestamp(row.get("end")),
                metadata={c: row[c] for c in extra if _optional(row[c]) is not None},
            )
        )
    return windows


def device_activity_from_frame(frame: pd.DataFrame) -> List[DeviceActivity]:
    return [
        DeviceActivity(
            user_id=str(row["user_id"]),
            device_id=str(row["device_id"]),
            start=_timestamp(row["start"]),
            end=_timestamp(row["end"]),
            session_id=_optional(row.get("session_id")),
        )
        for row in frame.to_dict(orient="records")
    ]


def derive_device_activity(windows: Sequence[SessionWindow], events: Sequence[BehaviorEvent]) -> List[DeviceActivity]:
    """
    One activity interval per closed session, attributed to its first device fingerprint.

    Sessions with no fingerprint use the session id as the device id, so two
    overlapping unattributed sessions still count as two devices.
    """

    first_device: Dict[str, str] = {}
    last_seen: Dict[str, datetime] = {}
    for event in events:
        if event.device_fingerprint and event.session_id not in first_device:
            first_device[event.session_id] = event.device_fingerprint
        last_seen[event.session_id] = event.timestamp

    activity = []
    for window in windows:
        end = window.end or last_seen.get(window.session_id)
        if end is None or end <= window.start:
            continue
        device = window.metadata.get("device_id") or first_device.get(window.session_id) or window.session_id
        activity.append(DeviceActivity(window.user_id, str(device), window.start, end, window.session_id))
    return activity


def records_to_frame(records: Sequence[EffectiveStudyRecord]) -> pd.DataFrame:
    rows = [
        {
            "record_id": r.record_id,
            "user_id": r.user_id,
            "session_id": r.session_id,
            "course_id": r.course_id,
            "lesson_id": r.lesson_id,
            "study_date": r.study_date.isoformat(),
            "start_time": r.start_time,
            "end_time": r.end_time,
            "total_duration": r.total_duration,
            "effective_duration": r.effective_duration,
            "invalid_duration": r.invalid_duration,
            "status": r.status.value,
            "invalid_reason": r.invalid_reason.value if r.invalid_reason else None,
            "description": r.description,
            "quality_score": r.quality_score,
            "focus_score": r.focus_score,
            "interaction_score": r.interaction_score,
            "continuity_score": r.continuity_score,
            "include_in_daily_total": r.include_in_daily_total,
            "evidence": json.dumps(
                [{"type": e.type, "data": e.data, "timestamp": e.timestamp.isoformat()} for e in r.evidence],
                sort_keys=True,
                default=str,
            ),
        }
        for r in records
    ]
    return pd.DataFrame(rows)


# -- file loading ------------------------------------------------------------


def load_table(path: Path) -> pd.DataFrame:
    """Read a parquet or CSV table."""

    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".parquet":
        return pd.read_parquet(path)
    if suffix == ".csv":
        return pv.read_csv(path, read_options=pv.ReadOptions(block_size=1 << 22)).to_pandas()
    raise ValueError(f"Unsupported table format '{path.suffix}' for {path}. Expected .parquet or .csv.")


def load_events(path: Path) -> List[BehaviorEvent]:
    return events_from_frame(load_table(path))


def load_sessions(path: Path) -> List[SessionWindow]:
    return sessions_from_frame(load_table(path))


def load_device_activity(path: Path) -> List[DeviceActivity]:
    return device_activity_from_frame(load_table(path))
