# ABOUTME: Incremental per (user, lesson) watch progress: clamped percentage, bounded history, segments.
# ABOUTME: Functions return new LearnProgress values; history entries are appended, never rewritten.

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

from src.common.schemas import LearnProgress, ProgressHistoryEntry, WatchedSegment

HISTORY_LIMIT = 100
COMPLETE = 100.0


def update_progress(
    progress: LearnProgress,
    percent: float,
    watched_duration: float,
    at: datetime,
    device: Optional[str] = None,
) -> LearnProgress:
    """Record a client progress report; the raw value goes to history, the stored value is clamped."""

    entry = ProgressHistoryEntry(time=at, progress=percent, watched_duration=watched_duration, device=device)
    history = (progress.progress_history + (entry,))[-HISTORY_LIMIT:]
    clamped = max(0.0, min(COMPLETE, percent))

    return replace(
        progress,
        progress=clamped,
        watched_duration=watched_duration,
        progress_history=history,
        last_update_time=at,
        last_update_device=device if device is not None else progress.last_update_device,
        is_completed=progress.is_completed or clamped >= COMPLETE,
    )


def add_watched_segment(progress: LearnProgress, start: float, end: float, at: datetime) -> LearnProgress:
    if end < start:
        raise ValueError(f"Watched segment ends before it starts ({start} > {end}).")
    segment = WatchedSegment(start=start, end=end, recorded_at=at)
    return replace(progress, watched_segments=progress.watched_segments + (segment,), last_position=end)


def calculate_effective_duration(progress: LearnProgress, effective_ratio: float) -> LearnProgress:
    """
    Sum watched segment durations weighted by ``effective_ratio``.

    The ratio is policy input from the caller (for example a session's effective /
    total time) and is clamped to [0, 1].
    """

    ratio = max(0.0, min(1.0, effective_ratio))
    total = sum(segment.duration for segment in progress.watched_segments) * ratio
    return replace(progress, effective_duration=total)


def learning_efficiency(progress: LearnProgress) -> float:
    if progress.watched_duration <= 0:
        return 0.0
    return progress.effective_duration / progress.watched_duration


def needs_sync(progress: LearnProgress, last_sync_time: datetime) -> bool:
    return progress.last_update_time is not None and progress.last_update_time > last_sync_time
