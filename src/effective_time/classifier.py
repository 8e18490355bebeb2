# ABOUTME: Applies the ordered validity rules to each time segment of a session.
# ABOUTME: Removes invalid sub-intervals precisely and labels segments valid, partial, or invalid.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from src.common.config import ClassifierPolicy
from src.common.enums import InvalidTimeReason, StudyTimeStatus
from src.common.schemas import (
    DeviceActivity,
    InvalidInterval,
    Interval,
    SegmentClassification,
    TimeSegment,
)

from .intervals import clip, find_concurrent_windows, subtract, total_seconds

logger = logging.getLogger(__name__)

EPSILON = 1e-6


@dataclass(frozen=True)
class ClassificationContext:
    """Inputs that do not come from the session's own event stream."""

    course_test_required: bool = False
    course_test_completed: bool = True
    concurrent_device_windows: Tuple[Interval, ...] = ()

    @classmethod
    def from_device_activity(
        cls,
        activities: Sequence[DeviceActivity],
        course_test_required: bool = False,
        course_test_completed: bool = True,
    ) -> "ClassificationContext":
        return cls(
            course_test_required=course_test_required,
            course_test_completed=course_test_completed,
            concurrent_device_windows=tuple(find_concurrent_windows(activities)),
        )


@dataclass
class _SessionView:
    """Session-wide facts a rule may need beyond the segment itself."""

    segments: Sequence[TimeSegment]
    policy: ClassifierPolicy
    context: ClassificationContext
    interaction_gaps: List[Interval] = field(default_factory=list)


Rule = Callable[[TimeSegment, int, _SessionView], List[Interval]]


def _whole(segment: TimeSegment) -> List[Interval]:
    return [Interval(segment.start, segment.end)]


def _identity_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    identity = segment.state.identity
    if identity == "failed":
        return _whole(segment)
    if view.policy.require_identity_verification and identity != "verified":
        return _whole(segment)
    return []


def _course_test_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    if view.context.course_test_required and not view.context.course_test_completed:
        return _whole(segment)
    return []


def _multiple_device_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    hits = []
    for window in view.context.concurrent_device_windows:
        overlap = clip(window, segment.start, segment.end)
        if overlap is not None:
            hits.append(overlap)
    return hits


def _browsing_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    return _whole(segment) if segment.state.activity == "browsing" else []


def _testing_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    return _whole(segment) if segment.state.activity == "testing" else []


def _focus_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    if not segment.state.focused:
        return _whole(segment)
    # A refocus too short to count leaves the learner effectively away.
    segments = view.segments
    if 0 < position < len(segments) - 1 and segment.duration < view.policy.min_refocus_seconds:
        if not segments[position - 1].state.focused and not segments[position + 1].state.focused:
            return _whole(segment)
    return []


def _hidden_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    return _whole(segment) if not segment.state.visible else []


def _idle_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    if not segment.state.idle:
        return []
    cut_from = segment.start + timedelta(seconds=view.policy.idle_timeout_seconds)
    if cut_from >= segment.end:
        return []
    return [Interval(cut_from, segment.end)]


def _interaction_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    hits = []
    for gap in view.interaction_gaps:
        overlap = clip(gap, segment.start, segment.end)
        if overlap is not None:
            hits.append(overlap)
    return hits


def _no_activity_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    return _whole(segment) if not segment.has_signal else []


def _network_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    return _whole(segment) if not segment.state.online else []


def _suspicious_rule(segment: TimeSegment, position: int, view: _SessionView) -> List[Interval]:
    window = timedelta(seconds=view.policy.suspicious_window_seconds)
    hits = []
    for event in segment.events:
        if event.behavior_type.is_suspicious():
            end = min(segment.end, event.timestamp + window)
            if end > event.timestamp:
                hits.append(Interval(event.timestamp, end))
    return hits


# Evaluated top to bottom; time removed by an earlier rule is never re-attributed.
RULES: List[Tuple[InvalidTimeReason, Rule]] = [
    (InvalidTimeReason.IDENTITY_VERIFICATION_FAILED, _identity_rule),
    (InvalidTimeReason.INCOMPLETE_COURSE_TEST, _course_test_rule),
    (InvalidTimeReason.MULTIPLE_DEVICE_LOGIN, _multiple_device_rule),
    (InvalidTimeReason.BROWSING_WEB_INFO, _browsing_rule),
    (InvalidTimeReason.ONLINE_TESTING, _testing_rule),
    (InvalidTimeReason.WINDOW_FOCUS_LOST, _focus_rule),
    (InvalidTimeReason.PAGE_HIDDEN, _hidden_rule),
    (InvalidTimeReason.IDLE_TIMEOUT, _idle_rule),
    (InvalidTimeReason.INTERACTION_TIMEOUT, _interaction_rule),
    (InvalidTimeReason.NO_ACTIVITY_DETECTED, _no_activity_rule),
    (InvalidTimeReason.NETWORK_DISCONNECTED, _network_rule),
    (InvalidTimeReason.SUSPICIOUS_BEHAVIOR, _suspicious_rule),
]


def interaction_gaps(segments: Sequence[TimeSegment], timeout_seconds: float) -> List[Interval]:
    """
    Portions of the session lying more than ``timeout_seconds`` after the last interaction.

    The session start counts as the first interaction and the session end closes the
    trailing gap. Sessions without any signal have no interaction gaps.
    """

    if not segments or not any(segment.has_signal for segment in segments):
        return []

    anchors: List[datetime] = [segments[0].start]
    for segment in segments:
        anchors.extend(e.timestamp for e in segment.events if e.behavior_type.is_interaction())
    anchors.append(segments[-1].end)

    timeout = timedelta(seconds=timeout_seconds)
    gaps = []
    for previous, current in zip(anchors, anchors[1:]):
        if current - previous > timeout:
            gaps.append(Interval(previous + timeout, current))
    return gaps


def classify_segment(segment: TimeSegment, position: int, view: _SessionView) -> SegmentClassification:
    remaining: List[Interval] = [Interval(segment.start, segment.end)]
    invalid: List[InvalidInterval] = []
    reason: Optional[InvalidTimeReason] = None

    for rule_reason, rule in RULES:
        if not remaining:
            break
        affected = rule(segment, position, view)
        if not affected:
            continue
        remaining, removed = subtract(remaining, affected)
        if not removed:
            continue
        if reason is None:
            reason = rule_reason
        invalid.extend(InvalidInterval(i.start, i.end, rule_reason) for i in removed)

    invalid.sort(key=lambda i: i.start)
    effective = total_seconds(remaining)
    invalid_seconds = sum(i.seconds for i in invalid)

    if reason is None:
        status = StudyTimeStatus.VALID
    elif effective <= EPSILON:
        status = StudyTimeStatus.INVALID
    else:
        status = StudyTimeStatus.PARTIAL

    return SegmentClassification(
        segment=segment,
        status=status,
        reason=reason,
        effective_duration=effective,
        invalid_duration=invalid_seconds,
        invalid_intervals=tuple(invalid),
    )


def classify_segments(
    segments: Sequence[TimeSegment],
    policy: ClassifierPolicy,
    context: Optional[ClassificationContext] = None,
) -> List[SegmentClassification]:
    """Classify every segment; output order matches the input order."""

    view = _SessionView(
        segments=segments,
        policy=policy,
        context=context or ClassificationContext(),
        interaction_gaps=interaction_gaps(segments, policy.interaction_timeout_seconds),
    )
    results = [classify_segment(segment, position, view) for position, segment in enumerate(segments)]

    if logger.isEnabledFor(logging.DEBUG):
        statuses: Dict[str, int] = {}
        for result in results:
            statuses[result.status.value] = statuses.get(result.status.value, 0) + 1
        logger.debug("Classified %d segments: %s", len(results), statuses)
    return results
