# ABOUTME: Defines canonical data structures shared by the study-time and anomaly engines.
# ABOUTME: Centralizes behavior event, segment, record, anomaly, and progress schemas.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, List, Mapping, Optional, Tuple

from .enums import AnomalySeverity, AnomalyStatus, AnomalyType, BehaviorType, InvalidTimeReason, StudyTimeStatus


@dataclass(frozen=True)
class BehaviorEvent:
    """Immutable behavior fact reported by the client during a session."""

    session_id: str
    behavior_type: BehaviorType
    timestamp: datetime
    video_position: Optional[float] = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class SessionWindow:
    """Raw bounds of one learning session; ``end`` is None while the session is active."""

    session_id: str
    user_id: str
    course_id: str
    lesson_id: str
    start: datetime
    end: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceActivity:
    """Interval during which a device was active for a user."""

    user_id: str
    device_id: str
    start: datetime
    end: datetime
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    @property
    def seconds(self) -> float:
        return max(0.0, (self.end - self.start).total_seconds())


@dataclass(frozen=True)
class SegmentState:
    """Client state in force for the whole of a segment."""

    focused: bool = True
    visible: bool = True
    idle: bool = False
    online: bool = True
    playing: bool = False
    activity: str = "lesson"  # lesson | browsing | testing
    identity: str = "unverified"  # unverified | verified | failed
    device_fingerprint: Optional[str] = None


@dataclass(frozen=True)
class TimeSegment:
    """[start, end) slice of a session bounded by state-changing events."""

    session_id: str
    index: int
    start: datetime
    end: datetime
    state: SegmentState
    context: Optional[BehaviorType] = None
    has_signal: bool = True
    events: Tuple[BehaviorEvent, ...] = ()

    @property
    def duration(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True)
class InvalidInterval:
    start: datetime
    end: datetime
    reason: InvalidTimeReason

    @property
    def seconds(self) -> float:
        return (self.end - self.start).total_seconds()


@dataclass(frozen=True)
class SegmentClassification:
    segment: TimeSegment
    status: StudyTimeStatus
    reason: Optional[InvalidTimeReason]
    effective_duration: float
    invalid_duration: float
    invalid_intervals: Tuple[InvalidInterval, ...] = ()


@dataclass(frozen=True)
class EvidenceEntry:
    type: str
    data: Mapping[str, Any]
    timestamp: datetime


@dataclass(frozen=True)
class EffectiveStudyRecord:
    """Classification output for one (user, session, day) window."""

    record_id: str
    user_id: str
    session_id: str
    course_id: str
    lesson_id: str
    study_date: date
    start_time: datetime
    end_time: datetime
    total_duration: float
    effective_duration: float
    invalid_duration: float
    status: StudyTimeStatus
    invalid_reason: Optional[InvalidTimeReason] = None
    description: Optional[str] = None
    quality_score: float = 0.0
    focus_score: float = 0.0
    interaction_score: float = 0.0
    continuity_score: float = 0.0
    evidence: Tuple[EvidenceEntry, ...] = ()
    reviewed_by: Optional[str] = None
    review_comment: Optional[str] = None
    review_time: Optional[datetime] = None
    include_in_daily_total: bool = True
    student_notified: bool = False
    update_time: Optional[datetime] = None


@dataclass(frozen=True)
class AnomalyCandidate:
    """Detector output before it becomes a tracked anomaly."""

    session_id: str
    user_id: str
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    description: str
    data: Mapping[str, Any]
    key: str = ""


@dataclass(frozen=True)
class LearnAnomaly:
    anomaly_id: str
    session_id: str
    user_id: str
    anomaly_type: AnomalyType
    description: str
    data: Mapping[str, Any]
    severity: AnomalySeverity
    status: AnomalyStatus
    detect_time: datetime
    auto_detected: bool = True
    evidence: Tuple[EvidenceEntry, ...] = ()
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolve_time: Optional[datetime] = None
    processing_notes: Optional[str] = None


@dataclass(frozen=True)
class ProgressHistoryEntry:
    time: datetime
    progress: float
    watched_duration: float
    device: Optional[str] = None


@dataclass(frozen=True)
class WatchedSegment:
    start: float
    end: float
    recorded_at: datetime

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class LearnProgress:
    """Cumulative watch state of one user on one lesson."""

    user_id: str
    lesson_id: str
    progress: float = 0.0
    watched_duration: float = 0.0
    effective_duration: float = 0.0
    watched_segments: Tuple[WatchedSegment, ...] = ()
    progress_history: Tuple[ProgressHistoryEntry, ...] = ()
    is_completed: bool = False
    last_update_time: Optional[datetime] = None
    last_update_device: Optional[str] = None
    last_position: Optional[float] = None


@dataclass(frozen=True)
class LearnArchive:
    """Long-term per (user, course) summary."""

    user_id: str
    course_id: str
    total_sessions: int
    total_effective_time: float
    total_invalid_time: float
    session_summary: Mapping[str, Any]
    behavior_summary: Mapping[str, Any]
    anomaly_summary: Mapping[str, Any]
    generated_at: datetime
    record_ids: List[str] = field(default_factory=list)
