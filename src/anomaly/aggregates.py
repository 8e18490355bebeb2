# ABOUTME: Reduces a session's event stream to the counts and gaps the anomaly detectors consume.
# ABOUTME: Uses pandas for the per-type counts, run lengths, and change detection.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from src.common.enums import BehaviorType
from src.common.schemas import BehaviorEvent, DeviceActivity, Interval, SessionWindow
from src.effective_time.intervals import find_concurrent_windows, max_concurrency
from src.effective_time.segments import resolve_session_end

DISCONNECT_METADATA_KEY = "disconnect_count"


@dataclass(frozen=True)
class SessionAggregates:
    session_id: str
    user_id: str
    start: datetime
    end: datetime
    duration_seconds: float
    event_count: int
    behavior_counts: Dict[str, int] = field(default_factory=dict)
    focus_loss_count: int = 0
    max_idle_gap_seconds: float = 0.0
    max_consecutive_face_failures: int = 0
    network_disconnect_count: int = 0
    suspicious_count: int = 0
    device_fingerprints: Tuple[str, ...] = ()
    device_change_count: int = 0
    ip_addresses: Tuple[str, ...] = ()
    ip_change_count: int = 0
    forward_progress_seconds: float = 0.0
    progress_ratio: float = 0.0
    concurrent_device_count: int = 0
    concurrent_windows: Tuple[Interval, ...] = ()


def events_frame(events: Sequence[BehaviorEvent]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "timestamp": [e.timestamp for e in events],
            "behavior_type": [e.behavior_type.value for e in events],
            "video_position": [e.video_position for e in events],
            "device_fingerprint": [e.device_fingerprint for e in events],
            "ip_address": [e.ip_address for e in events],
        },
        columns=["timestamp", "behavior_type", "video_position", "device_fingerprint", "ip_address"],
    )


def _longest_run(flags: pd.Series) -> int:
    """Length of the longest run of True values."""
    if flags.empty or not flags.any():
        return 0
    run_id = (flags != flags.shift()).cumsum()
    return int(flags.groupby(run_id).sum().max())


def _changes(values: pd.Series) -> Tuple[Tuple[str, ...], int]:
    observed = values.dropna()
    observed = observed[observed.astype(str) != ""]
    if observed.empty:
        return (), 0
    distinct = tuple(dict.fromkeys(observed.astype(str)))
    changes = int((observed != observed.shift()).iloc[1:].sum())
    return distinct, changes


def _idle_spans(df: pd.DataFrame, end: datetime) -> List[float]:
    spans: List[float] = []
    opened: Optional[datetime] = None
    for ts, kind in zip(df["timestamp"], df["behavior_type"]):
        if kind == BehaviorType.IDLE_START.value and opened is None:
            opened = ts
        elif kind == BehaviorType.IDLE_END.value and opened is not None:
            spans.append((ts - opened).total_seconds())
            opened = None
    if opened is not None:
        spans.append((end - opened).total_seconds())
    return spans


def _interaction_gaps(df: pd.DataFrame, start: datetime, end: datetime) -> List[float]:
    interactive = {b.value for b in BehaviorType if b.is_interaction()}
    stamps = [start] + list(df.loc[df["behavior_type"].isin(interactive), "timestamp"]) + [end]
    return [(b - a).total_seconds() for a, b in zip(stamps, stamps[1:])]


def _forward_progress(df: pd.DataFrame) -> float:
    positions = df["video_position"].dropna().to_numpy(dtype=float)
    if positions.size < 2:
        return 0.0
    deltas = np.diff(positions)
    return float(deltas[deltas > 0].sum())


def summarize_session(
    window: SessionWindow,
    events: Sequence[BehaviorEvent],
    device_activity: Sequence[DeviceActivity] = (),
    as_of: Optional[datetime] = None,
) -> SessionAggregates:
    """
    Collect detector inputs for one session.

    Idle gaps are the longer of explicit idle spans and the stretches between
    interaction events (session start and end included). The disconnect count is the
    larger of the offline events seen and any ``disconnect_count`` the client stored
    in session metadata.
    """

    end = resolve_session_end(window, events, as_of)
    duration = max(0.0, (end - window.start).total_seconds())
    df = events_frame(events)

    counts = df["behavior_type"].value_counts()
    behavior_counts = {str(k): int(v) for k, v in counts.sort_index().items()}

    suspicious_types = {b.value for b in BehaviorType if b.is_suspicious()}
    suspicious = int(df["behavior_type"].isin(suspicious_types).sum())

    face_outcomes = df[df["behavior_type"].isin([BehaviorType.FACE_VERIFY_FAIL.value, BehaviorType.FACE_VERIFY_SUCCESS.value])]
    face_runs = _longest_run(face_outcomes["behavior_type"] == BehaviorType.FACE_VERIFY_FAIL.value)

    offline_events = behavior_counts.get(BehaviorType.NETWORK_OFFLINE.value, 0)
    reported = window.metadata.get(DISCONNECT_METADATA_KEY)
    disconnects = max(offline_events, int(reported) if reported is not None else 0)

    devices, device_changes = _changes(df["device_fingerprint"])
    ips, ip_changes = _changes(df["ip_address"])

    gaps = _idle_spans(df, end) + (_interaction_gaps(df, window.start, end) if len(df) else [])
    forward = _forward_progress(df)

    overlapping = [
        a for a in device_activity if a.user_id == window.user_id and a.start < end and a.end > window.start
    ]
    concurrent = tuple(
        w for w in find_concurrent_windows(overlapping) if w.start < end and w.end > window.start
    )

    return SessionAggregates(
        session_id=window.session_id,
        user_id=window.user_id,
        start=window.start,
        end=end,
        duration_seconds=duration,
        event_count=len(df),
        behavior_counts=behavior_counts,
        focus_loss_count=behavior_counts.get(BehaviorType.WINDOW_BLUR.value, 0),
        max_idle_gap_seconds=max(gaps, default=0.0),
        max_consecutive_face_failures=face_runs,
        network_disconnect_count=disconnects,
        suspicious_count=suspicious,
        device_fingerprints=devices,
        device_change_count=device_changes,
        ip_addresses=ips,
        ip_change_count=ip_changes,
        forward_progress_seconds=forward,
        progress_ratio=forward / duration if duration > 0 else 0.0,
        concurrent_device_count=max_concurrency(overlapping) if concurrent else 0,
        concurrent_windows=concurrent,
    )
