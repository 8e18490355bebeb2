# ABOUTME: Enumerates behavior, study-time, and anomaly vocabularies used by every engine.
# ABOUTME: Keeps category, severity, and state-transition metadata next to each value.

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List


class BehaviorCategory(str, Enum):
    VIDEO_CONTROL = "video_control"
    WINDOW_FOCUS = "window_focus"
    MOUSE_ACTIVITY = "mouse_activity"
    KEYBOARD_ACTIVITY = "keyboard_activity"
    IDLE_DETECTION = "idle_detection"
    NETWORK_STATUS = "network_status"
    DEVICE_STATUS = "device_status"
    LEARNING_CONTEXT = "learning_context"
    IDENTITY = "identity"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"


class BehaviorType(str, Enum):
    """Client-side behavior reported during a learning session."""

    # Video control
    PLAY = "play"
    PAUSE = "pause"
    STOP = "stop"
    SEEK = "seek"
    FAST_FORWARD = "fast_forward"
    VOLUME_CHANGE = "volume_change"
    SPEED_CHANGE = "speed_change"
    FULLSCREEN_ENTER = "fullscreen_enter"
    FULLSCREEN_EXIT = "fullscreen_exit"
    TIME_UPDATE = "time_update"

    # Window focus
    WINDOW_FOCUS = "window_focus"
    WINDOW_BLUR = "window_blur"
    PAGE_VISIBLE = "page_visible"
    PAGE_HIDDEN = "page_hidden"

    # Mouse
    MOUSE_ENTER = "mouse_enter"
    MOUSE_LEAVE = "mouse_leave"
    MOUSE_MOVE = "mouse_move"
    MOUSE_CLICK = "mouse_click"

    # Keyboard
    KEY_PRESS = "key_press"
    KEY_COMBINATION = "key_combination"

    # Idle detection
    IDLE_START = "idle_start"
    IDLE_END = "idle_end"
    ACTIVITY_DETECTED = "activity_detected"

    # Network
    NETWORK_ONLINE = "network_online"
    NETWORK_OFFLINE = "network_offline"
    CONNECTION_SLOW = "connection_slow"

    # Device
    DEVICE_ORIENTATION_CHANGE = "device_orientation_change"
    SCREEN_RESIZE = "screen_resize"

    # Learning context
    BROWSE_START = "browse_start"
    BROWSE_END = "browse_end"
    TEST_START = "test_start"
    TEST_END = "test_end"

    # Identity (liveness check outcome)
    FACE_VERIFY_SUCCESS = "face_verify_success"
    FACE_VERIFY_FAIL = "face_verify_fail"

    # Suspicious
    RAPID_SEEK = "rapid_seek"
    MULTIPLE_TAB = "multiple_tab"
    DEVELOPER_TOOLS = "developer_tools"
    COPY_ATTEMPT = "copy_attempt"

    @property
    def category(self) -> BehaviorCategory:
        return _BEHAVIOR_CATEGORIES[self]

    def is_suspicious(self) -> bool:
        return self.category is BehaviorCategory.SUSPICIOUS_BEHAVIOR

    def is_boundary(self) -> bool:
        """True when the event changes the state a segment is classified under."""
        return self in _BOUNDARY_TYPES

    def is_interaction(self) -> bool:
        """Any signal showing the learner is present, used for interaction gaps."""
        return self.category in _PRESENCE_CATEGORIES or self in (
            BehaviorType.ACTIVITY_DETECTED,
            BehaviorType.IDLE_END,
        )

    def is_meaningful_interaction(self) -> bool:
        """Deliberate learner actions counted by the interaction score."""
        return self in _MEANINGFUL_TYPES


_BEHAVIOR_CATEGORIES: Dict[BehaviorType, BehaviorCategory] = {}
for _member in (
    BehaviorType.PLAY,
    BehaviorType.PAUSE,
    BehaviorType.STOP,
    BehaviorType.SEEK,
    BehaviorType.FAST_FORWARD,
    BehaviorType.VOLUME_CHANGE,
    BehaviorType.SPEED_CHANGE,
    BehaviorType.FULLSCREEN_ENTER,
    BehaviorType.FULLSCREEN_EXIT,
    BehaviorType.TIME_UPDATE,
):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.VIDEO_CONTROL
for _member in (
    BehaviorType.WINDOW_FOCUS,
    BehaviorType.WINDOW_BLUR,
    BehaviorType.PAGE_VISIBLE,
    BehaviorType.PAGE_HIDDEN,
):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.WINDOW_FOCUS
for _member in (
    BehaviorType.MOUSE_ENTER,
    BehaviorType.MOUSE_LEAVE,
    BehaviorType.MOUSE_MOVE,
    BehaviorType.MOUSE_CLICK,
):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.MOUSE_ACTIVITY
for _member in (BehaviorType.KEY_PRESS, BehaviorType.KEY_COMBINATION):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.KEYBOARD_ACTIVITY
for _member in (BehaviorType.IDLE_START, BehaviorType.IDLE_END, BehaviorType.ACTIVITY_DETECTED):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.IDLE_DETECTION
for _member in (BehaviorType.NETWORK_ONLINE, BehaviorType.NETWORK_OFFLINE, BehaviorType.CONNECTION_SLOW):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.NETWORK_STATUS
for _member in (BehaviorType.DEVICE_ORIENTATION_CHANGE, BehaviorType.SCREEN_RESIZE):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.DEVICE_STATUS
for _member in (
    BehaviorType.BROWSE_START,
    BehaviorType.BROWSE_END,
    BehaviorType.TEST_START,
    BehaviorType.TEST_END,
):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.LEARNING_CONTEXT
for _member in (BehaviorType.FACE_VERIFY_SUCCESS, BehaviorType.FACE_VERIFY_FAIL):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.IDENTITY
for _member in (
    BehaviorType.RAPID_SEEK,
    BehaviorType.MULTIPLE_TAB,
    BehaviorType.DEVELOPER_TOOLS,
    BehaviorType.COPY_ATTEMPT,
):
    _BEHAVIOR_CATEGORIES[_member] = BehaviorCategory.SUSPICIOUS_BEHAVIOR

_BOUNDARY_TYPES: FrozenSet[BehaviorType] = frozenset(
    {
        BehaviorType.WINDOW_FOCUS,
        BehaviorType.WINDOW_BLUR,
        BehaviorType.PAGE_VISIBLE,
        BehaviorType.PAGE_HIDDEN,
        BehaviorType.IDLE_START,
        BehaviorType.IDLE_END,
        BehaviorType.NETWORK_ONLINE,
        BehaviorType.NETWORK_OFFLINE,
        BehaviorType.PLAY,
        BehaviorType.PAUSE,
        BehaviorType.STOP,
        BehaviorType.BROWSE_START,
        BehaviorType.BROWSE_END,
        BehaviorType.TEST_START,
        BehaviorType.TEST_END,
        BehaviorType.FACE_VERIFY_SUCCESS,
        BehaviorType.FACE_VERIFY_FAIL,
    }
)

_PRESENCE_CATEGORIES: FrozenSet[BehaviorCategory] = frozenset(
    {
        BehaviorCategory.VIDEO_CONTROL,
        BehaviorCategory.WINDOW_FOCUS,
        BehaviorCategory.MOUSE_ACTIVITY,
        BehaviorCategory.KEYBOARD_ACTIVITY,
        BehaviorCategory.LEARNING_CONTEXT,
    }
)

_MEANINGFUL_TYPES: FrozenSet[BehaviorType] = frozenset(
    {
        BehaviorType.PLAY,
        BehaviorType.PAUSE,
        BehaviorType.SEEK,
        BehaviorType.MOUSE_CLICK,
        BehaviorType.KEY_PRESS,
    }
)


class StudyTimeStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    PENDING = "pending"
    PARTIAL = "partial"
    EXCLUDED = "excluded"
    SUSPENDED = "suspended"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    def is_final(self) -> bool:
        return self in (StudyTimeStatus.APPROVED, StudyTimeStatus.REJECTED, StudyTimeStatus.EXPIRED)

    def is_countable(self) -> bool:
        return self in (StudyTimeStatus.VALID, StudyTimeStatus.PARTIAL, StudyTimeStatus.APPROVED)

    def needs_review(self) -> bool:
        return self in (StudyTimeStatus.PENDING, StudyTimeStatus.REVIEWING)

    def requires_notification(self) -> bool:
        return self in (
            StudyTimeStatus.INVALID,
            StudyTimeStatus.EXCLUDED,
            StudyTimeStatus.SUSPENDED,
            StudyTimeStatus.REJECTED,
            StudyTimeStatus.EXPIRED,
        )

    def next_statuses(self) -> FrozenSet["StudyTimeStatus"]:
        return STUDY_TIME_TRANSITIONS[self]

    def can_transition_to(self, status: "StudyTimeStatus") -> bool:
        return status in STUDY_TIME_TRANSITIONS[self]


# Review transitions; EXCLUDED is terminal alongside the final statuses.
STUDY_TIME_TRANSITIONS: Dict[StudyTimeStatus, FrozenSet[StudyTimeStatus]] = {
    StudyTimeStatus.PENDING: frozenset(
        {StudyTimeStatus.VALID, StudyTimeStatus.INVALID, StudyTimeStatus.PARTIAL, StudyTimeStatus.REVIEWING}
    ),
    StudyTimeStatus.REVIEWING: frozenset(
        {StudyTimeStatus.APPROVED, StudyTimeStatus.REJECTED, StudyTimeStatus.PARTIAL}
    ),
    StudyTimeStatus.VALID: frozenset(
        {StudyTimeStatus.APPROVED, StudyTimeStatus.EXCLUDED, StudyTimeStatus.REVIEWING}
    ),
    StudyTimeStatus.INVALID: frozenset({StudyTimeStatus.EXCLUDED, StudyTimeStatus.REVIEWING}),
    StudyTimeStatus.PARTIAL: frozenset(
        {StudyTimeStatus.APPROVED, StudyTimeStatus.REJECTED, StudyTimeStatus.REVIEWING}
    ),
    StudyTimeStatus.SUSPENDED: frozenset(
        {StudyTimeStatus.VALID, StudyTimeStatus.INVALID, StudyTimeStatus.PENDING}
    ),
    StudyTimeStatus.EXCLUDED: frozenset(),
    StudyTimeStatus.APPROVED: frozenset(),
    StudyTimeStatus.REJECTED: frozenset(),
    StudyTimeStatus.EXPIRED: frozenset(),
}


class InvalidTimeReason(str, Enum):
    BROWSING_WEB_INFO = "browsing_web_info"
    ONLINE_TESTING = "online_testing"
    IDENTITY_VERIFICATION_FAILED = "identity_verification_failed"
    INTERACTION_TIMEOUT = "interaction_timeout"
    IDLE_TIMEOUT = "idle_timeout"
    NO_ACTIVITY_DETECTED = "no_activity_detected"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    INCOMPLETE_COURSE_TEST = "incomplete_course_test"
    WINDOW_FOCUS_LOST = "window_focus_lost"
    PAGE_HIDDEN = "page_hidden"
    MULTIPLE_DEVICE_LOGIN = "multiple_device_login"
    NETWORK_DISCONNECTED = "network_disconnected"
    SYSTEM_ERROR = "system_error"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
    MANUAL_EXCLUSION = "manual_exclusion"

    def affects_whole_course(self) -> bool:
        return self in (InvalidTimeReason.INCOMPLETE_COURSE_TEST, InvalidTimeReason.IDENTITY_VERIFICATION_FAILED)

    @property
    def regulation_category(self) -> str:
        return _REGULATION_CATEGORIES.get(self, "technical_reason")

    @property
    def severity(self) -> "AnomalySeverity":
        if self in (InvalidTimeReason.INCOMPLETE_COURSE_TEST, InvalidTimeReason.IDENTITY_VERIFICATION_FAILED):
            return AnomalySeverity.CRITICAL
        if self in (
            InvalidTimeReason.DAILY_LIMIT_EXCEEDED,
            InvalidTimeReason.MULTIPLE_DEVICE_LOGIN,
            InvalidTimeReason.SUSPICIOUS_BEHAVIOR,
        ):
            return AnomalySeverity.HIGH
        if self in (
            InvalidTimeReason.INTERACTION_TIMEOUT,
            InvalidTimeReason.IDLE_TIMEOUT,
            InvalidTimeReason.WINDOW_FOCUS_LOST,
        ):
            return AnomalySeverity.MEDIUM
        return AnomalySeverity.LOW

    def requires_student_notification(self) -> bool:
        return self in (
            InvalidTimeReason.BROWSING_WEB_INFO,
            InvalidTimeReason.ONLINE_TESTING,
            InvalidTimeReason.IDENTITY_VERIFICATION_FAILED,
            InvalidTimeReason.INTERACTION_TIMEOUT,
            InvalidTimeReason.IDLE_TIMEOUT,
            InvalidTimeReason.DAILY_LIMIT_EXCEEDED,
            InvalidTimeReason.INCOMPLETE_COURSE_TEST,
        )


_REGULATION_CATEGORIES: Dict[InvalidTimeReason, str] = {
    InvalidTimeReason.BROWSING_WEB_INFO: "regulation_a",
    InvalidTimeReason.ONLINE_TESTING: "regulation_a",
    InvalidTimeReason.IDENTITY_VERIFICATION_FAILED: "regulation_b",
    InvalidTimeReason.INTERACTION_TIMEOUT: "regulation_c",
    InvalidTimeReason.IDLE_TIMEOUT: "regulation_c",
    InvalidTimeReason.NO_ACTIVITY_DETECTED: "regulation_c",
    InvalidTimeReason.DAILY_LIMIT_EXCEEDED: "regulation_d",
    InvalidTimeReason.INCOMPLETE_COURSE_TEST: "regulation_e",
}

# First matching reason wins when several rules remove time from one segment.
REASON_PRECEDENCE: List[InvalidTimeReason] = [
    InvalidTimeReason.IDENTITY_VERIFICATION_FAILED,
    InvalidTimeReason.INCOMPLETE_COURSE_TEST,
    InvalidTimeReason.MULTIPLE_DEVICE_LOGIN,
    InvalidTimeReason.BROWSING_WEB_INFO,
    InvalidTimeReason.ONLINE_TESTING,
    InvalidTimeReason.WINDOW_FOCUS_LOST,
    InvalidTimeReason.PAGE_HIDDEN,
    InvalidTimeReason.IDLE_TIMEOUT,
    InvalidTimeReason.INTERACTION_TIMEOUT,
    InvalidTimeReason.NO_ACTIVITY_DETECTED,
    InvalidTimeReason.NETWORK_DISCONNECTED,
    InvalidTimeReason.SUSPICIOUS_BEHAVIOR,
    InvalidTimeReason.DAILY_LIMIT_EXCEEDED,
    InvalidTimeReason.SYSTEM_ERROR,
    InvalidTimeReason.MANUAL_EXCLUSION,
]


class AnomalySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]

    @property
    def processing_hours(self) -> int:
        """Hours allowed before an open anomaly of this severity is overdue."""
        return _SEVERITY_PROCESSING_HOURS[self]

    def is_high_priority(self) -> bool:
        return self in (AnomalySeverity.HIGH, AnomalySeverity.CRITICAL)

    @classmethod
    def sorted_by_weight(cls) -> List["AnomalySeverity"]:
        return sorted(cls, key=lambda severity: severity.weight, reverse=True)


_SEVERITY_WEIGHTS: Dict[AnomalySeverity, int] = {
    AnomalySeverity.LOW: 1,
    AnomalySeverity.MEDIUM: 2,
    AnomalySeverity.HIGH: 3,
    AnomalySeverity.CRITICAL: 4,
}

_SEVERITY_PROCESSING_HOURS: Dict[AnomalySeverity, int] = {
    AnomalySeverity.LOW: 72,
    AnomalySeverity.MEDIUM: 24,
    AnomalySeverity.HIGH: 4,
    AnomalySeverity.CRITICAL: 1,
}


class AnomalyType(str, Enum):
    MULTIPLE_DEVICE = "multiple_device"
    RAPID_PROGRESS = "rapid_progress"
    WINDOW_SWITCH = "window_switch"
    IDLE_TIMEOUT = "idle_timeout"
    FACE_DETECT_FAIL = "face_detect_fail"
    NETWORK_ANOMALY = "network_anomaly"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
    DEVICE_CHANGE = "device_change"
    IP_CHANGE = "ip_change"

    @property
    def default_severity(self) -> AnomalySeverity:
        return _DEFAULT_SEVERITIES[self]

    @property
    def category(self) -> str:
        return _ANOMALY_CATEGORIES[self]

    def requires_immediate_action(self) -> bool:
        return self in (AnomalyType.MULTIPLE_DEVICE, AnomalyType.FACE_DETECT_FAIL)


_DEFAULT_SEVERITIES: Dict[AnomalyType, AnomalySeverity] = {
    AnomalyType.MULTIPLE_DEVICE: AnomalySeverity.CRITICAL,
    AnomalyType.RAPID_PROGRESS: AnomalySeverity.HIGH,
    AnomalyType.FACE_DETECT_FAIL: AnomalySeverity.HIGH,
    AnomalyType.WINDOW_SWITCH: AnomalySeverity.MEDIUM,
    AnomalyType.SUSPICIOUS_BEHAVIOR: AnomalySeverity.MEDIUM,
    AnomalyType.DEVICE_CHANGE: AnomalySeverity.MEDIUM,
    AnomalyType.IDLE_TIMEOUT: AnomalySeverity.LOW,
    AnomalyType.NETWORK_ANOMALY: AnomalySeverity.LOW,
    AnomalyType.IP_CHANGE: AnomalySeverity.LOW,
}

_ANOMALY_CATEGORIES: Dict[AnomalyType, str] = {
    AnomalyType.MULTIPLE_DEVICE: "device",
    AnomalyType.DEVICE_CHANGE: "device",
    AnomalyType.RAPID_PROGRESS: "progress",
    AnomalyType.WINDOW_SWITCH: "behavior",
    AnomalyType.IDLE_TIMEOUT: "behavior",
    AnomalyType.SUSPICIOUS_BEHAVIOR: "behavior",
    AnomalyType.FACE_DETECT_FAIL: "security",
    AnomalyType.NETWORK_ANOMALY: "network",
    AnomalyType.IP_CHANGE: "network",
}


class AnomalyStatus(str, Enum):
    DETECTED = "detected"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"

    def is_active(self) -> bool:
        return self in (AnomalyStatus.DETECTED, AnomalyStatus.INVESTIGATING)

    def is_completed(self) -> bool:
        return self in (AnomalyStatus.RESOLVED, AnomalyStatus.IGNORED)

    def next_statuses(self) -> FrozenSet["AnomalyStatus"]:
        return ANOMALY_TRANSITIONS[self]

    def can_transition_to(self, status: "AnomalyStatus") -> bool:
        return status in ANOMALY_TRANSITIONS[self]


ANOMALY_TRANSITIONS: Dict[AnomalyStatus, FrozenSet[AnomalyStatus]] = {
    AnomalyStatus.DETECTED: frozenset(
        {AnomalyStatus.INVESTIGATING, AnomalyStatus.RESOLVED, AnomalyStatus.IGNORED}
    ),
    AnomalyStatus.INVESTIGATING: frozenset({AnomalyStatus.RESOLVED, AnomalyStatus.IGNORED}),
    AnomalyStatus.RESOLVED: frozenset(),
    AnomalyStatus.IGNORED: frozenset({AnomalyStatus.INVESTIGATING}),
}
