# ABOUTME: Provides half-open interval arithmetic over datetimes.
# ABOUTME: Used to carve invalid sub-intervals out of segments and to find concurrent devices.

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.common.schemas import DeviceActivity, Interval


def clip(interval: Interval, start: datetime, end: datetime) -> Optional[Interval]:
    """Intersect ``interval`` with [start, end); None when they do not overlap."""
    lo = max(interval.start, start)
    hi = min(interval.end, end)
    if hi <= lo:
        return None
    return Interval(lo, hi)


def merge(intervals: Iterable[Interval]) -> List[Interval]:
    ordered = sorted((i for i in intervals if i.end > i.start), key=lambda i: (i.start, i.end))
    merged: List[Interval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def subtract(remaining: Sequence[Interval], affected: Iterable[Interval]) -> Tuple[List[Interval], List[Interval]]:
    """
    Remove ``affected`` from ``remaining``.

    Returns the intervals still remaining and the intervals actually removed.
    Both lists are ordered and non-overlapping.
    """

    cuts = merge(affected)
    if not cuts:
        return list(remaining), []

    kept: List[Interval] = []
    removed: List[Interval] = []
    for piece in remaining:
        cursor = piece.start
        for cut in cuts:
            if cut.end <= cursor or cut.start >= piece.end:
                continue
            if cut.start > cursor:
                kept.append(Interval(cursor, cut.start))
            removed.append(Interval(max(cursor, cut.start), min(piece.end, cut.end)))
            cursor = min(piece.end, cut.end)
            if cursor >= piece.end:
                break
        if cursor < piece.end:
            kept.append(Interval(cursor, piece.end))
    return kept, removed


def total_seconds(intervals: Iterable[Interval]) -> float:
    return sum(i.seconds for i in intervals)


def find_concurrent_windows(activities: Iterable[DeviceActivity], min_devices: int = 2) -> List[Interval]:
    """
    Return the windows during which at least ``min_devices`` distinct devices were active.

    Overlapping activity of the same device is merged first so a device never
    counts twice against itself.
    """

    windows: List[Interval] = []
    active = 0
    opened: Optional[datetime] = None
    for moment, delta in _device_edges(activities):
        active += delta
        if active >= min_devices and opened is None:
            opened = moment
        elif active < min_devices and opened is not None:
            if moment > opened:
                windows.append(Interval(opened, moment))
            opened = None
    return merge(windows)


def max_concurrency(activities: Iterable[DeviceActivity]) -> int:
    """Largest number of distinct devices active at the same instant."""
    peak = 0
    active = 0
    for _, delta in _device_edges(activities):
        active += delta
        peak = max(peak, active)
    return peak


def _device_edges(activities: Iterable[DeviceActivity]) -> List[Tuple[datetime, int]]:
    per_device: Dict[str, List[Interval]] = defaultdict(list)
    for activity in activities:
        if activity.end > activity.start:
            per_device[activity.device_id].append(Interval(activity.start, activity.end))

    edges: List[Tuple[datetime, int]] = []
    for intervals in per_device.values():
        for interval in merge(intervals):
            edges.append((interval.start, 1))
            edges.append((interval.end, -1))
    # Ends sort before starts at the same instant: touching intervals do not overlap.
    edges.sort(key=lambda edge: (edge[0], edge[1]))
    return edges
