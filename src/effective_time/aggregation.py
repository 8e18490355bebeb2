# ABOUTME: Folds classified segments into one effective-study record per (user, session, day).
# ABOUTME: Enforces the effective + invalid == total invariant before anything is persisted.

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Sequence

from src.common.config import ScoringWeights
from src.common.enums import REASON_PRECEDENCE, InvalidTimeReason, StudyTimeStatus
from src.common.schemas import EffectiveStudyRecord, EvidenceEntry, Interval, SegmentClassification, SessionWindow

from .intervals import clip
from .records import check_duration_invariant
from .scoring import compute_scores, measure_window

logger = logging.getLogger(__name__)

EPSILON = 1e-6


def day_bounds(day: date, tzinfo) -> Interval:
    start = datetime.combine(day, time.min, tzinfo=tzinfo)
    return Interval(start, start + timedelta(days=1))


def record_id_for(session_id: str, day: date) -> str:
    return f"{session_id}:{day.isoformat()}"


def _days_spanned(start: datetime, end: datetime) -> List[date]:
    days = []
    current = start.date()
    last = (end - timedelta(microseconds=1)).date() if end > start else start.date()
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def _invalid_by_reason(
    classifications: Sequence[SegmentClassification], lo: datetime, hi: datetime
) -> Dict[InvalidTimeReason, float]:
    totals: Dict[InvalidTimeReason, float] = {}
    for result in classifications:
        for interval in result.invalid_intervals:
            overlap = clip(Interval(interval.start, interval.end), lo, hi)
            if overlap is not None:
                totals[interval.reason] = totals.get(interval.reason, 0.0) + overlap.seconds
    return OrderedDict((reason, totals[reason]) for reason in REASON_PRECEDENCE if reason in totals)


def _behavior_summary(classifications: Sequence[SegmentClassification], lo: datetime, hi: datetime, total: float) -> dict:
    events = [e for result in classifications for e in result.segment.events if lo <= e.timestamp < hi]
    unique_types = sorted({e.behavior_type.value for e in events})
    return {
        "total_behaviors": len(events),
        "unique_actions": unique_types,
        "timestamp_range": {
            "start": events[0].timestamp.isoformat(),
            "end": events[-1].timestamp.isoformat(),
        }
        if events
        else None,
        "interaction_frequency": round(len(events) / (total / 60.0), 4) if total > 0 else 0.0,
    }


def _describe(reason: Optional[InvalidTimeReason], invalid_by_reason: Dict[InvalidTimeReason, float]) -> Optional[str]:
    if reason is None:
        return None
    parts = [f"{r.value}={seconds:.0f}s" for r, seconds in invalid_by_reason.items()]
    if reason not in invalid_by_reason:
        parts.insert(0, reason.value)
    return "Invalid time: " + ", ".join(parts)


def aggregate_records(
    window: SessionWindow,
    classifications: Sequence[SegmentClassification],
    weights: ScoringWeights,
) -> List[EffectiveStudyRecord]:
    """
    Build one record per calendar day touched by the classified segments.

    Segments crossing midnight are split at the day boundary. The record reason is the
    highest-precedence reason that removed time; a reason affecting the whole course
    invalidates every record of the session, including days before it occurred.
    """

    if not classifications:
        return []

    session_start = classifications[0].segment.start
    session_end = classifications[-1].segment.end
    tzinfo = session_start.tzinfo
    whole_course = next(
        (r for r in _invalid_by_reason(classifications, session_start, session_end) if r.affects_whole_course()),
        None,
    )

    records: List[EffectiveStudyRecord] = []
    for day in _days_spanned(session_start, session_end):
        bounds = day_bounds(day, tzinfo)
        lo = max(bounds.start, session_start)
        hi = min(bounds.end, session_end)
        if hi <= lo:
            continue

        measured = measure_window(classifications, lo, hi)
        total = measured.total_seconds
        if total <= EPSILON:
            continue

        invalid_by_reason = _invalid_by_reason(classifications, lo, hi)
        invalid = min(total, sum(invalid_by_reason.values()))
        reason = next(iter(invalid_by_reason), None)

        # A whole-course reason anywhere in the session voids every day of it.
        if whole_course is not None:
            reason = whole_course
            invalid = total
        effective = total - invalid
        if abs(effective) <= EPSILON:
            effective = 0.0

        if reason is None:
            status = StudyTimeStatus.VALID
        elif effective <= EPSILON:
            status = StudyTimeStatus.INVALID
        else:
            status = StudyTimeStatus.PARTIAL

        scores = compute_scores(
            measure_window(classifications, lo, hi, effective_seconds=effective),
            weights,
        )

        evidence = [EvidenceEntry("behavior_summary", _behavior_summary(classifications, lo, hi, total), hi)]
        for invalid_reason, seconds in invalid_by_reason.items():
            evidence.append(
                EvidenceEntry(
                    "invalid_time",
                    {
                        "reason": invalid_reason.value,
                        "seconds": round(seconds, 6),
                        "regulation_category": invalid_reason.regulation_category,
                    },
                    hi,
                )
            )

        record = EffectiveStudyRecord(
            record_id=record_id_for(window.session_id, day),
            user_id=window.user_id,
            session_id=window.session_id,
            course_id=window.course_id,
            lesson_id=window.lesson_id,
            study_date=day,
            start_time=lo,
            end_time=hi,
            total_duration=total,
            effective_duration=effective,
            invalid_duration=invalid,
            status=status,
            invalid_reason=reason,
            description=_describe(reason, invalid_by_reason),
            quality_score=scores.quality,
            focus_score=scores.focus,
            interaction_score=scores.interaction,
            continuity_score=scores.continuity,
            evidence=tuple(evidence),
            include_in_daily_total=effective > 0,
            update_time=hi,
        )
        check_duration_invariant(record)
        records.append(record)

    logger.debug("Aggregated %d records for session %s", len(records), window.session_id)
    return records
