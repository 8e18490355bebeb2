# ABOUTME: Tests long-term learning archives and tabular anomaly reports.
# ABOUTME: Builds small fixtures by hand so every aggregate is easy to check.

from datetime import date, datetime, timedelta, timezone

import pytest

from src.anomaly.lifecycle import create_anomaly, mark_as_ignored, mark_as_resolved
from src.anomaly.report import REPORT_COLUMNS, generate_anomaly_report, summarize_anomalies
from src.archive.summarizer import RegistrationTimes, reconcile_registration_times, summarize_archive
from src.common.enums import AnomalyType, BehaviorType, StudyTimeStatus
from src.common.schemas import AnomalyCandidate, BehaviorEvent, EffectiveStudyRecord, SessionWindow

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _anomaly(session_id, anomaly_type, hours=0):
    candidate = AnomalyCandidate(
        session_id=session_id,
        user_id="u1",
        anomaly_type=anomaly_type,
        severity=anomaly_type.default_severity,
        description=anomaly_type.value,
        data={},
    )
    return create_anomaly(candidate, T0 + timedelta(hours=hours))


def _record(session_id, effective, total=3600.0):
    return EffectiveStudyRecord(
        record_id=f"{session_id}:2024-03-04",
        user_id="u1",
        session_id=session_id,
        course_id="c1",
        lesson_id="l1",
        study_date=date(2024, 3, 4),
        start_time=T0,
        end_time=T0 + timedelta(seconds=total),
        total_duration=total,
        effective_duration=effective,
        invalid_duration=total - effective,
        status=StudyTimeStatus.PARTIAL,
    )


def test_archive_per_user_and_course():
    sessions = [
        SessionWindow("s1", "u1", "c1", "l1", T0, T0 + timedelta(hours=1)),
        SessionWindow("s2", "u1", "c1", "l2", T0 + timedelta(hours=3), None),
        SessionWindow("s3", "u1", "c2", "l9", T0, T0 + timedelta(hours=1)),
    ]
    records = [_record("s1", 3000.0), _record("s2", 1800.0), _record("s3", 3600.0)]
    events = [
        BehaviorEvent("s1", BehaviorType.PLAY, T0 + timedelta(seconds=1)),
        BehaviorEvent("s1", BehaviorType.COPY_ATTEMPT, T0 + timedelta(seconds=2)),
        BehaviorEvent("s2", BehaviorType.PLAY, T0 + timedelta(hours=3, seconds=1)),
    ]
    anomalies = [
        mark_as_resolved(_anomaly("s1", AnomalyType.WINDOW_SWITCH), "checked", "reviewer", T0 + timedelta(hours=2)),
        _anomaly("s2", AnomalyType.IDLE_TIMEOUT),
    ]

    archives = summarize_archive(sessions, records, anomalies, events, generated_at=T0 + timedelta(days=1))
    assert [(a.user_id, a.course_id) for a in archives] == [("u1", "c1"), ("u1", "c2")]

    course = archives[0]
    assert course.total_sessions == 2
    assert course.total_effective_time == pytest.approx(4800.0)
    assert course.total_invalid_time == pytest.approx(2400.0)
    assert course.record_ids == ["s1:2024-03-04", "s2:2024-03-04"]
    assert course.session_summary["completion_rate"] == 0.5
    assert course.session_summary["average_session_time"] == pytest.approx(3600.0)
    assert course.behavior_summary["most_common_behavior"] == "play"
    assert course.behavior_summary["suspicious_count"] == 1
    assert course.anomaly_summary["resolution_stats"] == {"resolved": 1, "pending": 1, "ignored": 0}
    assert archives[1].anomaly_summary["total_anomalies"] == 0


def test_registration_keeps_first_learn_time():
    early = SessionWindow("s1", "u1", "c1", "l1", T0, T0 + timedelta(hours=1))
    late = SessionWindow("s2", "u1", "c1", "l1", T0 + timedelta(days=2), T0 + timedelta(days=2, hours=1))
    existing = {("u1", "c1"): RegistrationTimes("u1", "c1", T0 - timedelta(days=7), T0 - timedelta(days=7))}

    times = reconcile_registration_times([late, early], existing)[("u1", "c1")]
    assert times.first_learn_time == T0 - timedelta(days=7)
    assert times.last_learn_time == T0 + timedelta(days=2, hours=1)

    fresh = reconcile_registration_times([early])[("u1", "c1")]
    assert fresh.first_learn_time == T0


def test_report_orders_by_severity_then_time():
    anomalies = [
        _anomaly("s1", AnomalyType.IDLE_TIMEOUT, hours=0),
        _anomaly("s2", AnomalyType.MULTIPLE_DEVICE, hours=2),
        _anomaly("s3", AnomalyType.WINDOW_SWITCH, hours=1),
        _anomaly("s4", AnomalyType.RAPID_PROGRESS, hours=3),
    ]
    report = generate_anomaly_report(anomalies, now=T0 + timedelta(hours=8))
    assert list(report.columns) == REPORT_COLUMNS
    assert list(report["anomaly_type"]) == ["multiple_device", "rapid_progress", "window_switch", "idle_timeout"]
    assert list(report["overdue"]) == [True, True, False, False]


def test_summary_counts_resolutions():
    resolved = mark_as_resolved(_anomaly("s1", AnomalyType.WINDOW_SWITCH), "ok", "system", T0 + timedelta(minutes=30))
    ignored = mark_as_ignored(_anomaly("s2", AnomalyType.IP_CHANGE), "vpn", "reviewer", T0 + timedelta(hours=1))
    summary = summarize_anomalies([resolved, ignored, _anomaly("s3", AnomalyType.FACE_DETECT_FAIL)])

    assert summary["total"] == 3
    assert summary["by_severity"] == {"high": 1, "medium": 1, "low": 1}
    assert summary["by_status"] == {"detected": 1, "ignored": 1, "resolved": 1}
    assert summary["high_priority"] == 1
    assert summary["auto_resolved"] == 1
    assert summary["avg_processing_seconds"] == pytest.approx(2700.0)


def test_empty_report():
    assert generate_anomaly_report([]).empty
    assert summarize_anomalies([])["total"] == 0
