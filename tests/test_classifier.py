# ABOUTME: Tests the ordered validity rules on realistic session timelines.
# ABOUTME: Checks interval-precise invalidation, rule precedence, and deterministic output.

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.common.enums import BehaviorType, InvalidTimeReason, StudyTimeStatus
from src.common.schemas import BehaviorEvent, DeviceActivity, SessionWindow
from src.effective_time.aggregation import aggregate_records
from src.effective_time.classifier import ClassificationContext, classify_segments, interaction_gaps
from src.effective_time.segments import build_segments

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def _window(seconds):
    return SessionWindow("s1", "u1", "c1", "l1", T0, T0 + timedelta(seconds=seconds))


def _event(kind, offset, **extra):
    return BehaviorEvent(session_id="s1", behavior_type=kind, timestamp=T0 + timedelta(seconds=offset), **extra)


def _heartbeats(start, stop, step, skip=lambda t: False):
    return [_event(BehaviorType.TIME_UPDATE, t) for t in range(start, stop, step) if not skip(t)]


def _classify(window, events, policy, context=None):
    return classify_segments(build_segments(window, events), policy, context)


def _blur_session():
    events = _heartbeats(60, 3600, 60, skip=lambda t: 600 <= t <= 1320)
    events += [_event(BehaviorType.WINDOW_BLUR, 600), _event(BehaviorType.WINDOW_FOCUS, 1320)]
    return sorted(events, key=lambda e: e.timestamp)


def test_twelve_minute_blur_in_one_hour_session(engine_config):
    window = _window(3600)
    classifications = _classify(window, _blur_session(), engine_config.classifier)

    blurred = [c for c in classifications if c.reason is not None]
    assert len(blurred) == 1
    assert blurred[0].reason is InvalidTimeReason.WINDOW_FOCUS_LOST
    assert blurred[0].status in (StudyTimeStatus.INVALID, StudyTimeStatus.PARTIAL)
    assert all(c.status is StudyTimeStatus.VALID for c in classifications if c is not blurred[0])

    records = aggregate_records(window, classifications, engine_config.scoring)
    assert len(records) == 1
    record = records[0]
    assert record.effective_duration == pytest.approx(2880.0)
    assert record.invalid_duration == pytest.approx(720.0)
    assert record.invalid_reason is InvalidTimeReason.WINDOW_FOCUS_LOST
    assert record.status is StudyTimeStatus.PARTIAL


def test_classification_is_deterministic(engine_config):
    window = _window(3600)
    events = _blur_session()
    first = _classify(window, events, engine_config.classifier)
    second = _classify(window, events, engine_config.classifier)
    assert first == second
    assert aggregate_records(window, first, engine_config.scoring) == aggregate_records(
        window, second, engine_config.scoring
    )


def test_idle_segment_loses_only_time_past_timeout(engine_config):
    events = _heartbeats(30, 100, 30)
    events += [_event(BehaviorType.IDLE_START, 100), _event(BehaviorType.IDLE_END, 400)]
    events += _heartbeats(450, 600, 50)
    classifications = _classify(_window(600), events, engine_config.classifier)

    idle = classifications[1]
    assert idle.segment.state.idle
    assert idle.reason is InvalidTimeReason.IDLE_TIMEOUT
    assert idle.status is StudyTimeStatus.PARTIAL
    assert idle.invalid_duration == pytest.approx(240.0)
    assert idle.invalid_intervals[0].start == T0 + timedelta(seconds=160)
    assert sum(c.effective_duration for c in classifications) == pytest.approx(360.0)


def test_interaction_gap_removes_time_past_timeout(engine_config):
    events = [_event(BehaviorType.TIME_UPDATE, 50), _event(BehaviorType.TIME_UPDATE, 900)]
    classifications = _classify(_window(1000), events, engine_config.classifier)

    assert len(classifications) == 1
    result = classifications[0]
    assert result.reason is InvalidTimeReason.INTERACTION_TIMEOUT
    assert result.status is StudyTimeStatus.PARTIAL
    assert result.invalid_duration == pytest.approx(550.0)
    assert result.effective_duration == pytest.approx(450.0)


def test_session_without_signal_is_no_activity(engine_config):
    classifications = _classify(_window(600), [], engine_config.classifier)

    assert len(classifications) == 1
    assert classifications[0].reason is InvalidTimeReason.NO_ACTIVITY_DETECTED
    assert classifications[0].status is StudyTimeStatus.INVALID
    assert classifications[0].effective_duration == 0.0


def test_suspicious_event_invalidates_window_after_it(engine_config):
    events = _heartbeats(25, 600, 50) + [_event(BehaviorType.COPY_ATTEMPT, 200)]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(600), events, engine_config.classifier)

    result = classifications[0]
    assert result.reason is InvalidTimeReason.SUSPICIOUS_BEHAVIOR
    assert result.invalid_duration == pytest.approx(engine_config.classifier.suspicious_window_seconds)


def test_concurrent_devices_invalidate_overlap(engine_config):
    activity = [
        DeviceActivity("u1", "laptop", T0, T0 + timedelta(seconds=600)),
        DeviceActivity("u1", "phone", T0 + timedelta(seconds=100), T0 + timedelta(seconds=300)),
    ]
    context = ClassificationContext.from_device_activity(activity)
    classifications = _classify(_window(600), _heartbeats(25, 600, 50), engine_config.classifier, context)

    result = classifications[0]
    assert result.reason is InvalidTimeReason.MULTIPLE_DEVICE_LOGIN
    assert result.invalid_duration == pytest.approx(200.0)


def test_earlier_rule_keeps_reason_when_rules_overlap(engine_config):
    activity = [
        DeviceActivity("u1", "laptop", T0, T0 + timedelta(seconds=600)),
        DeviceActivity("u1", "phone", T0, T0 + timedelta(seconds=600)),
    ]
    context = ClassificationContext.from_device_activity(activity)
    events = _heartbeats(25, 600, 50) + [_event(BehaviorType.COPY_ATTEMPT, 200)]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(600), events, engine_config.classifier, context)

    result = classifications[0]
    assert result.reason is InvalidTimeReason.MULTIPLE_DEVICE_LOGIN
    assert {i.reason for i in result.invalid_intervals} == {InvalidTimeReason.MULTIPLE_DEVICE_LOGIN}
    assert result.invalid_duration == pytest.approx(600.0)


def test_failed_identity_invalidates_whole_record(engine_config):
    window = _window(600)
    events = [_event(BehaviorType.FACE_VERIFY_FAIL, 10)] + _heartbeats(25, 600, 50)
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(window, events, engine_config.classifier)
    assert classifications[0].status is StudyTimeStatus.VALID

    record = aggregate_records(window, classifications, engine_config.scoring)[0]
    assert record.invalid_reason is InvalidTimeReason.IDENTITY_VERIFICATION_FAILED
    assert record.status is StudyTimeStatus.INVALID
    assert record.effective_duration == 0.0
    assert record.invalid_duration == pytest.approx(600.0)


def test_required_identity_without_verification_is_invalid(engine_config):
    policy = replace(engine_config.classifier, require_identity_verification=True)
    classifications = _classify(_window(600), _heartbeats(25, 600, 50), policy)
    assert classifications[0].reason is InvalidTimeReason.IDENTITY_VERIFICATION_FAILED


def test_incomplete_course_test_invalidates_everything(engine_config):
    context = ClassificationContext(course_test_required=True, course_test_completed=False)
    classifications = _classify(_window(600), _heartbeats(25, 600, 50), engine_config.classifier, context)
    assert classifications[0].reason is InvalidTimeReason.INCOMPLETE_COURSE_TEST
    assert classifications[0].status is StudyTimeStatus.INVALID


def test_browsing_and_testing_contexts_are_not_study_time(engine_config):
    events = _heartbeats(25, 600, 50)
    events += [
        _event(BehaviorType.BROWSE_START, 100),
        _event(BehaviorType.BROWSE_END, 200),
        _event(BehaviorType.TEST_START, 300),
        _event(BehaviorType.TEST_END, 400),
    ]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(600), events, engine_config.classifier)

    reasons = {c.reason for c in classifications if c.reason is not None}
    assert reasons == {InvalidTimeReason.BROWSING_WEB_INFO, InvalidTimeReason.ONLINE_TESTING}
    assert sum(c.invalid_duration for c in classifications) == pytest.approx(200.0)


def test_short_refocus_between_blurs_counts_as_focus_lost(engine_config):
    events = _heartbeats(25, 600, 50)
    events += [
        _event(BehaviorType.WINDOW_BLUR, 100),
        _event(BehaviorType.WINDOW_FOCUS, 140),
        _event(BehaviorType.WINDOW_BLUR, 142),
        _event(BehaviorType.WINDOW_FOCUS, 180),
    ]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(600), events, engine_config.classifier)

    lost = [c for c in classifications if c.reason is InvalidTimeReason.WINDOW_FOCUS_LOST]
    assert sum(c.invalid_duration for c in lost) == pytest.approx(80.0)


def test_interaction_gaps_empty_without_signal(engine_config):
    segments = build_segments(_window(600), [])
    assert interaction_gaps(segments, engine_config.classifier.interaction_timeout_seconds) == []


def _removed_by_reason(classifications):
    totals = {}
    for result in classifications:
        for interval in result.invalid_intervals:
            totals[interval.reason] = totals.get(interval.reason, 0.0) + interval.seconds
    return totals


def test_hidden_page_and_offline_spans_lose_their_time(engine_config):
    events = _heartbeats(30, 1800, 60, skip=lambda t: 300 <= t <= 480 or 900 <= t <= 1080)
    events += [
        _event(BehaviorType.PAGE_HIDDEN, 300),
        _event(BehaviorType.PAGE_VISIBLE, 480),
        _event(BehaviorType.NETWORK_OFFLINE, 900),
        _event(BehaviorType.NETWORK_ONLINE, 1080),
    ]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(1800), events, engine_config.classifier)

    hidden = [c for c in classifications if not c.segment.state.visible]
    offline = [c for c in classifications if not c.segment.state.online]
    assert [c.reason for c in hidden] == [InvalidTimeReason.PAGE_HIDDEN]
    assert [c.reason for c in offline] == [InvalidTimeReason.NETWORK_DISCONNECTED]
    assert hidden[0].status is StudyTimeStatus.INVALID
    assert offline[0].status is StudyTimeStatus.INVALID

    assert _removed_by_reason(classifications) == {
        InvalidTimeReason.PAGE_HIDDEN: pytest.approx(180.0),
        InvalidTimeReason.NETWORK_DISCONNECTED: pytest.approx(180.0),
    }
    assert sum(c.effective_duration for c in classifications) == pytest.approx(1440.0)


def test_long_offline_span_loses_time_to_interaction_gap_first(engine_config):
    events = _heartbeats(30, 1800, 60, skip=lambda t: 900 <= t <= 1500)
    events += [_event(BehaviorType.NETWORK_OFFLINE, 900), _event(BehaviorType.NETWORK_ONLINE, 1500)]
    events.sort(key=lambda e: e.timestamp)
    classifications = _classify(_window(1800), events, engine_config.classifier)

    offline = classifications[1]
    assert not offline.segment.state.online
    assert offline.reason is InvalidTimeReason.INTERACTION_TIMEOUT
    assert offline.status is StudyTimeStatus.INVALID
    assert [(i.reason, i.seconds) for i in offline.invalid_intervals] == [
        (InvalidTimeReason.NETWORK_DISCONNECTED, pytest.approx(270.0)),
        (InvalidTimeReason.INTERACTION_TIMEOUT, pytest.approx(330.0)),
    ]
    assert _removed_by_reason(classifications) == {
        InvalidTimeReason.INTERACTION_TIMEOUT: pytest.approx(360.0),
        InvalidTimeReason.NETWORK_DISCONNECTED: pytest.approx(270.0),
    }
