# ABOUTME: Pure transformations over effective-study records (review, reclassification, evidence).
# ABOUTME: Each function returns a new record; persistence applies the result as a whole.

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Mapping, Optional

from src.common.config import ScoringWeights
from src.common.enums import InvalidTimeReason, StudyTimeStatus
from src.common.errors import InvalidTransitionError, InvariantViolationError
from src.common.schemas import EffectiveStudyRecord, EvidenceEntry

EPSILON = 1e-6
HIGH_QUALITY_SCORE = 8.0


def check_duration_invariant(record: EffectiveStudyRecord) -> None:
    """Raise when the record's durations are inconsistent."""

    if record.effective_duration < -EPSILON or record.invalid_duration < -EPSILON:
        raise InvariantViolationError(
            f"Record {record.record_id} has negative durations "
            f"(effective={record.effective_duration}, invalid={record.invalid_duration})."
        )
    drift = record.effective_duration + record.invalid_duration - record.total_duration
    if abs(drift) > EPSILON:
        raise InvariantViolationError(
            f"Record {record.record_id}: effective {record.effective_duration} + invalid "
            f"{record.invalid_duration} != total {record.total_duration}."
        )


def add_evidence(record: EffectiveStudyRecord, kind: str, data: Mapping[str, Any], at: datetime) -> EffectiveStudyRecord:
    return replace(record, evidence=record.evidence + (EvidenceEntry(kind, dict(data), at),))


def mark_as_valid(
    record: EffectiveStudyRecord,
    at: datetime,
    effective_duration: Optional[float] = None,
) -> EffectiveStudyRecord:
    effective = record.total_duration if effective_duration is None else effective_duration
    if effective < 0 or effective > record.total_duration + EPSILON:
        raise ValueError(f"Effective duration {effective} outside [0, {record.total_duration}].")
    updated = replace(
        record,
        status=StudyTimeStatus.VALID,
        invalid_reason=None,
        effective_duration=effective,
        invalid_duration=record.total_duration - effective,
        include_in_daily_total=True,
        update_time=at,
    )
    check_duration_invariant(updated)
    return updated


def mark_as_invalid(
    record: EffectiveStudyRecord,
    reason: InvalidTimeReason,
    at: datetime,
    description: Optional[str] = None,
) -> EffectiveStudyRecord:
    return replace(
        record,
        status=StudyTimeStatus.INVALID,
        invalid_reason=reason,
        description=description,
        effective_duration=0.0,
        invalid_duration=record.total_duration,
        include_in_daily_total=False,
        update_time=at,
    )


def mark_as_reviewed(
    record: EffectiveStudyRecord,
    status: StudyTimeStatus,
    reviewed_by: str,
    at: datetime,
    comment: Optional[str] = None,
) -> EffectiveStudyRecord:
    """Apply a reviewer's decision; the status change must follow the review table."""

    if not record.status.can_transition_to(status):
        raise InvalidTransitionError(record.status, status, subject=f"record {record.record_id}")
    return replace(
        record,
        status=status,
        reviewed_by=reviewed_by,
        review_comment=comment,
        review_time=at,
        update_time=at,
    )


def trim_for_daily_limit(record: EffectiveStudyRecord, seconds: float, at: datetime) -> EffectiveStudyRecord:
    """Move ``seconds`` of effective time into invalid time because the day is over its ceiling."""

    if seconds <= 0:
        return record
    seconds = min(seconds, record.effective_duration)
    effective = record.effective_duration - seconds
    if effective <= EPSILON:
        effective = 0.0
    fully_trimmed = effective == 0.0

    updated = replace(
        record,
        effective_duration=effective,
        invalid_duration=record.total_duration - effective,
        status=StudyTimeStatus.INVALID if fully_trimmed else StudyTimeStatus.PARTIAL,
        invalid_reason=record.invalid_reason or InvalidTimeReason.DAILY_LIMIT_EXCEEDED,
        include_in_daily_total=not fully_trimmed,
        update_time=at,
    )
    updated = add_evidence(
        updated,
        "daily_limit_exceeded",
        {"reason": InvalidTimeReason.DAILY_LIMIT_EXCEEDED.value, "seconds": round(seconds, 6)},
        at,
    )
    check_duration_invariant(updated)
    return updated


def mark_student_notified(record: EffectiveStudyRecord, at: datetime) -> EffectiveStudyRecord:
    return replace(record, student_notified=True, update_time=at)


def effective_rate(record: EffectiveStudyRecord) -> float:
    if record.total_duration <= 0:
        return 0.0
    return record.effective_duration / record.total_duration


def invalid_rate(record: EffectiveStudyRecord) -> float:
    if record.total_duration <= 0:
        return 0.0
    return record.invalid_duration / record.total_duration


def is_high_quality(record: EffectiveStudyRecord) -> bool:
    return record.quality_score >= HIGH_QUALITY_SCORE


def needs_quality_review(record: EffectiveStudyRecord, weights: ScoringWeights) -> bool:
    """Low quality or low focus sends countable time to a human reviewer."""
    if not record.status.is_countable():
        return False
    return record.quality_score < weights.quality_review_threshold or record.focus_score < weights.focus_review_threshold


def requires_student_notification(record: EffectiveStudyRecord) -> bool:
    if record.student_notified:
        return False
    if record.invalid_reason is not None and record.invalid_reason.requires_student_notification():
        return True
    return record.status.requires_notification()
