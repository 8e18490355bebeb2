# ABOUTME: Tests incremental lesson progress tracking.
# ABOUTME: Covers clamping, bounded history, watched segments, and effective duration.

from datetime import datetime, timedelta, timezone

import pytest

from src.common.schemas import LearnProgress
from src.effective_time.progress import (
    HISTORY_LIMIT,
    add_watched_segment,
    calculate_effective_duration,
    learning_efficiency,
    needs_sync,
    update_progress,
)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


def test_progress_is_clamped_but_history_keeps_raw_value():
    progress = update_progress(LearnProgress("u1", "l1"), 120.0, 900.0, T0, device="laptop")
    assert progress.progress == 100.0
    assert progress.is_completed
    assert progress.progress_history[-1].progress == 120.0
    assert progress.last_update_device == "laptop"

    negative = update_progress(LearnProgress("u1", "l1"), -5.0, 0.0, T0)
    assert negative.progress == 0.0
    assert not negative.is_completed


def test_completion_is_sticky():
    done = update_progress(LearnProgress("u1", "l1"), 100.0, 600.0, T0)
    rewound = update_progress(done, 40.0, 650.0, T0 + timedelta(minutes=1))
    assert rewound.progress == 40.0
    assert rewound.is_completed


def test_history_keeps_latest_entries():
    progress = LearnProgress("u1", "l1")
    for i in range(HISTORY_LIMIT + 20):
        progress = update_progress(progress, float(i % 100), float(i), T0 + timedelta(seconds=i))
    assert len(progress.progress_history) == HISTORY_LIMIT
    assert progress.progress_history[0].watched_duration == 20.0
    assert progress.progress_history[-1].watched_duration == float(HISTORY_LIMIT + 19)


def test_watched_segments_and_effective_duration():
    progress = add_watched_segment(LearnProgress("u1", "l1"), 0.0, 300.0, T0)
    progress = add_watched_segment(progress, 300.0, 420.0, T0 + timedelta(minutes=5))
    assert progress.last_position == 420.0

    progress = calculate_effective_duration(progress, 0.5)
    assert progress.effective_duration == pytest.approx(210.0)
    assert calculate_effective_duration(progress, 3.0).effective_duration == pytest.approx(420.0)
    assert calculate_effective_duration(progress, -1.0).effective_duration == 0.0


def test_backwards_segment_is_rejected():
    with pytest.raises(ValueError):
        add_watched_segment(LearnProgress("u1", "l1"), 100.0, 50.0, T0)


def test_efficiency_and_sync():
    progress = update_progress(LearnProgress("u1", "l1"), 50.0, 400.0, T0)
    progress = add_watched_segment(progress, 0.0, 400.0, T0)
    progress = calculate_effective_duration(progress, 0.75)
    assert learning_efficiency(progress) == pytest.approx(0.75)
    assert learning_efficiency(LearnProgress("u1", "l1")) == 0.0

    assert needs_sync(progress, T0 - timedelta(seconds=1))
    assert not needs_sync(progress, T0)
    assert not needs_sync(LearnProgress("u1", "l1"), T0)
