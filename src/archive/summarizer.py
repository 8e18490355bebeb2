# ABOUTME: Folds per-session records, events, and anomalies into long-term per (user, course) archives.
# ABOUTME: Also reconciles first/last learn times onto registrations as a separate one-way step.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from src.common.enums import AnomalyStatus
from src.common.schemas import BehaviorEvent, EffectiveStudyRecord, LearnAnomaly, LearnArchive, SessionWindow

logger = logging.getLogger(__name__)

RegistrationKey = Tuple[str, str]


@dataclass(frozen=True)
class RegistrationTimes:
    user_id: str
    course_id: str
    first_learn_time: Optional[datetime]
    last_learn_time: Optional[datetime]


def reconcile_registration_times(
    sessions: Sequence[SessionWindow],
    existing: Optional[Mapping[RegistrationKey, RegistrationTimes]] = None,
) -> Dict[RegistrationKey, RegistrationTimes]:
    """
    Propagate session learn times to their (user, course) registration.

    A registration keeps its first learn time once set; the last learn time moves to
    the latest session activity seen.
    """

    result: Dict[RegistrationKey, RegistrationTimes] = dict(existing or {})
    for window in sorted(sessions, key=lambda w: w.start):
        key = (window.user_id, window.course_id)
        latest = window.end or window.start
        current = result.get(key)
        if current is None:
            result[key] = RegistrationTimes(window.user_id, window.course_id, window.start, latest)
            continue
        first = current.first_learn_time or window.start
        last = latest if current.last_learn_time is None else max(current.last_learn_time, latest)
        result[key] = RegistrationTimes(window.user_id, window.course_id, first, last)
    return result


def _session_summary(windows: pd.DataFrame, records: pd.DataFrame) -> Dict:
    if windows.empty:
        return {
            "total_sessions": 0,
            "total_time": 0.0,
            "completion_rate": 0.0,
            "average_session_time": 0.0,
            "first_learn_time": None,
            "last_learn_time": None,
        }
    per_session = (
        records.groupby("session_id")["total_duration"].sum() if not records.empty else pd.Series(dtype="float64")
    )
    total_time = float(per_session.sum())
    finished = int(windows["end"].notna().sum())
    latest = windows["end"].fillna(windows["start"])
    return {
        "total_sessions": int(len(windows)),
        "total_time": round(total_time, 3),
        "completion_rate": round(finished / len(windows), 4),
        "average_session_time": round(total_time / len(windows), 3),
        "first_learn_time": windows["start"].min().isoformat(),
        "last_learn_time": latest.max().isoformat(),
    }


def _behavior_summary(events: pd.DataFrame) -> Dict:
    if events.empty:
        return {"total_behaviors": 0, "behavior_stats": {}, "suspicious_count": 0, "most_common_behavior": None}
    counts = events["behavior_type"].value_counts()
    return {
        "total_behaviors": int(len(events)),
        "behavior_stats": {str(k): int(v) for k, v in counts.sort_index().items()},
        "suspicious_count": int(events["suspicious"].sum()),
        # value_counts orders by count; ties resolve alphabetically for stable output.
        "most_common_behavior": sorted(counts[counts == counts.max()].index)[0],
    }


def _anomaly_summary(anomalies: Sequence[LearnAnomaly]) -> Dict:
    stats = {"resolved": 0, "pending": 0, "ignored": 0}
    types: Dict[str, int] = {}
    severities: Dict[str, int] = {}
    for anomaly in anomalies:
        types[anomaly.anomaly_type.value] = types.get(anomaly.anomaly_type.value, 0) + 1
        severities[anomaly.severity.value] = severities.get(anomaly.severity.value, 0) + 1
        if anomaly.status is AnomalyStatus.RESOLVED:
            stats["resolved"] += 1
        elif anomaly.status is AnomalyStatus.IGNORED:
            stats["ignored"] += 1
        else:
            stats["pending"] += 1
    return {
        "total_anomalies": len(anomalies),
        "anomaly_types": dict(sorted(types.items())),
        "resolution_stats": stats,
        "severity_distribution": dict(sorted(severities.items())),
    }


def summarize_archive(
    sessions: Sequence[SessionWindow],
    records: Sequence[EffectiveStudyRecord],
    anomalies: Sequence[LearnAnomaly],
    events: Sequence[BehaviorEvent],
    generated_at: datetime,
) -> List[LearnArchive]:
    """Build one archive per (user, course) found in ``sessions``."""

    windows = pd.DataFrame(
        {
            "session_id": [w.session_id for w in sessions],
            "user_id": [w.user_id for w in sessions],
            "course_id": [w.course_id for w in sessions],
            "start": [w.start for w in sessions],
            "end": [w.end for w in sessions],
        },
        columns=["session_id", "user_id", "course_id", "start", "end"],
    )
    record_frame = pd.DataFrame(
        {
            "record_id": [r.record_id for r in records],
            "session_id": [r.session_id for r in records],
            "total_duration": [r.total_duration for r in records],
            "effective_duration": [r.effective_duration for r in records],
            "invalid_duration": [r.invalid_duration for r in records],
        },
        columns=["record_id", "session_id", "total_duration", "effective_duration", "invalid_duration"],
    )
    event_frame = pd.DataFrame(
        {
            "session_id": [e.session_id for e in events],
            "behavior_type": [e.behavior_type.value for e in events],
            "suspicious": [e.behavior_type.is_suspicious() for e in events],
        },
        columns=["session_id", "behavior_type", "suspicious"],
    )

    archives: List[LearnArchive] = []
    for (user_id, course_id), group in windows.groupby(["user_id", "course_id"], sort=True):
        session_ids = set(group["session_id"])
        course_records = record_frame[record_frame["session_id"].isin(session_ids)]
        course_events = event_frame[event_frame["session_id"].isin(session_ids)]
        course_anomalies = [a for a in anomalies if a.session_id in session_ids]

        archives.append(
            LearnArchive(
                user_id=str(user_id),
                course_id=str(course_id),
                total_sessions=int(len(group)),
                total_effective_time=round(float(course_records["effective_duration"].sum()), 6),
                total_invalid_time=round(float(course_records["invalid_duration"].sum()), 6),
                session_summary=_session_summary(group, course_records),
                behavior_summary=_behavior_summary(course_events),
                anomaly_summary=_anomaly_summary(course_anomalies),
                generated_at=generated_at,
                record_ids=sorted(course_records["record_id"]),
            )
        )

    logger.info("Built %d archives from %d sessions", len(archives), len(windows))
    return archives
