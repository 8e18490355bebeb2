# ABOUTME: Tests record review transitions and derived record properties.
# ABOUTME: Covers mark_as_* helpers, rates, quality review, and student notification rules.

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from src.common.enums import STUDY_TIME_TRANSITIONS, InvalidTimeReason, StudyTimeStatus
from src.common.errors import InvalidTransitionError
from src.common.schemas import EffectiveStudyRecord
from src.effective_time.records import (
    effective_rate,
    invalid_rate,
    is_high_quality,
    mark_as_invalid,
    mark_as_reviewed,
    mark_as_valid,
    mark_student_notified,
    needs_quality_review,
    requires_student_notification,
)

AT = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


def _mk_record(status=StudyTimeStatus.PARTIAL, effective=2400.0, quality=7.0, focus=0.8, reason=None):
    return EffectiveStudyRecord(
        record_id="s1:2024-03-04",
        user_id="u1",
        session_id="s1",
        course_id="c1",
        lesson_id="l1",
        study_date=date(2024, 3, 4),
        start_time=datetime(2024, 3, 4, 9, tzinfo=timezone.utc),
        end_time=datetime(2024, 3, 4, 10, tzinfo=timezone.utc),
        total_duration=3600.0,
        effective_duration=effective,
        invalid_duration=3600.0 - effective,
        status=status,
        invalid_reason=reason,
        quality_score=quality,
        focus_score=focus,
    )


@pytest.mark.parametrize("current", list(StudyTimeStatus))
@pytest.mark.parametrize("requested", list(StudyTimeStatus))
def test_review_follows_transition_table(current, requested):
    record = _mk_record(status=current)
    if requested in STUDY_TIME_TRANSITIONS[current]:
        reviewed = mark_as_reviewed(record, requested, "auditor", AT, comment="checked")
        assert reviewed.status is requested
        assert reviewed.reviewed_by == "auditor"
        assert reviewed.review_time == AT
    else:
        with pytest.raises(InvalidTransitionError):
            mark_as_reviewed(record, requested, "auditor", AT)


def test_final_statuses_have_no_exits():
    for status in (StudyTimeStatus.APPROVED, StudyTimeStatus.REJECTED, StudyTimeStatus.EXPIRED, StudyTimeStatus.EXCLUDED):
        assert not STUDY_TIME_TRANSITIONS[status]


def test_mark_as_valid_restores_full_time():
    record = mark_as_valid(_mk_record(reason=InvalidTimeReason.IDLE_TIMEOUT), AT)
    assert record.status is StudyTimeStatus.VALID
    assert record.invalid_reason is None
    assert record.effective_duration == 3600.0
    assert record.invalid_duration == 0.0


def test_mark_as_valid_rejects_out_of_range_duration():
    with pytest.raises(ValueError):
        mark_as_valid(_mk_record(), AT, effective_duration=4000.0)


def test_mark_as_invalid_zeroes_effective_time():
    record = mark_as_invalid(_mk_record(), InvalidTimeReason.MANUAL_EXCLUSION, AT, "excluded by auditor")
    assert record.status is StudyTimeStatus.INVALID
    assert record.effective_duration == 0.0
    assert record.invalid_duration == 3600.0
    assert not record.include_in_daily_total


def test_rates_and_quality():
    record = _mk_record(effective=2700.0, quality=8.5)
    assert effective_rate(record) == pytest.approx(0.75)
    assert invalid_rate(record) == pytest.approx(0.25)
    assert is_high_quality(record)
    assert not is_high_quality(replace(record, quality_score=7.9))


def test_zero_length_record_rates_are_zero():
    record = replace(_mk_record(effective=0.0), total_duration=0.0, invalid_duration=0.0)
    assert effective_rate(record) == 0.0
    assert invalid_rate(record) == 0.0


def test_quality_review_flags_low_scores(engine_config):
    weights = engine_config.scoring
    assert needs_quality_review(_mk_record(quality=5.0), weights)
    assert needs_quality_review(_mk_record(focus=0.5), weights)
    assert not needs_quality_review(_mk_record(), weights)
    assert not needs_quality_review(_mk_record(status=StudyTimeStatus.INVALID, quality=1.0), weights)


def test_student_notification():
    idle = _mk_record(reason=InvalidTimeReason.IDLE_TIMEOUT)
    assert requires_student_notification(idle)
    assert not requires_student_notification(mark_student_notified(idle, AT))
    assert not requires_student_notification(_mk_record(reason=InvalidTimeReason.NETWORK_DISCONNECTED))
    assert requires_student_notification(_mk_record(status=StudyTimeStatus.REJECTED))
