# ABOUTME: Splits a session's behavior timeline into ordered, non-overlapping time segments.
# ABOUTME: Boundaries come from focus, visibility, idle, network, playback, context, and device changes.

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Sequence

from src.common.enums import BehaviorType
from src.common.errors import MalformedEventError
from src.common.schemas import BehaviorEvent, SegmentState, SessionWindow, TimeSegment

logger = logging.getLogger(__name__)


def resolve_session_end(
    window: SessionWindow,
    events: Sequence[BehaviorEvent],
    as_of: Optional[datetime] = None,
) -> datetime:
    """
    Closing instant for the session.

    Closed sessions use their recorded end. Active sessions are closed at ``as_of``
    when given, otherwise at the last event (or the start when nothing was reported).
    """

    if window.end is not None:
        return window.end
    if as_of is not None:
        return as_of
    if events:
        return events[-1].timestamp
    return window.start


def validate_events(window: SessionWindow, events: Sequence[BehaviorEvent], end: datetime) -> None:
    """Reject batches that break the ordering precondition instead of reordering them."""

    if end < window.start:
        raise MalformedEventError(
            f"Session {window.session_id} ends at {end.isoformat()} before it starts at {window.start.isoformat()}.",
            session_id=window.session_id,
        )

    previous: Optional[datetime] = None
    for position, event in enumerate(events):
        if event.session_id != window.session_id:
            raise MalformedEventError(
                f"Event #{position} belongs to session {event.session_id}, expected {window.session_id}.",
                session_id=window.session_id,
            )
        if event.timestamp < window.start or event.timestamp > end:
            raise MalformedEventError(
                f"Event #{position} at {event.timestamp.isoformat()} falls outside the session window.",
                session_id=window.session_id,
            )
        if previous is not None:
            if event.timestamp == previous:
                raise MalformedEventError(
                    f"Event #{position} duplicates timestamp {event.timestamp.isoformat()}.",
                    session_id=window.session_id,
                )
            if event.timestamp < previous:
                raise MalformedEventError(
                    f"Event #{position} at {event.timestamp.isoformat()} is out of order.",
                    session_id=window.session_id,
                )
        previous = event.timestamp


def apply_event(state: SegmentState, event: BehaviorEvent) -> SegmentState:
    """State in force after ``event``."""

    kind = event.behavior_type
    if kind is BehaviorType.WINDOW_FOCUS:
        state = replace(state, focused=True)
    elif kind is BehaviorType.WINDOW_BLUR:
        state = replace(state, focused=False)
    elif kind is BehaviorType.PAGE_VISIBLE:
        state = replace(state, visible=True)
    elif kind is BehaviorType.PAGE_HIDDEN:
        state = replace(state, visible=False)
    elif kind is BehaviorType.IDLE_START:
        state = replace(state, idle=True)
    elif kind is BehaviorType.IDLE_END:
        state = replace(state, idle=False)
    elif kind is BehaviorType.NETWORK_ONLINE:
        state = replace(state, online=True)
    elif kind is BehaviorType.NETWORK_OFFLINE:
        state = replace(state, online=False)
    elif kind is BehaviorType.PLAY:
        state = replace(state, playing=True)
    elif kind in (BehaviorType.PAUSE, BehaviorType.STOP):
        state = replace(state, playing=False)
    elif kind is BehaviorType.BROWSE_START:
        state = replace(state, activity="browsing")
    elif kind is BehaviorType.TEST_START:
        state = replace(state, activity="testing")
    elif kind in (BehaviorType.BROWSE_END, BehaviorType.TEST_END):
        state = replace(state, activity="lesson")
    elif kind is BehaviorType.FACE_VERIFY_SUCCESS:
        state = replace(state, identity="verified")
    elif kind is BehaviorType.FACE_VERIFY_FAIL:
        state = replace(state, identity="failed")

    if event.device_fingerprint:
        state = replace(state, device_fingerprint=event.device_fingerprint)
    return state


def _opens_segment(state: SegmentState, event: BehaviorEvent) -> bool:
    if event.behavior_type.is_boundary():
        return True
    fingerprint = event.device_fingerprint
    return bool(fingerprint and state.device_fingerprint and fingerprint != state.device_fingerprint)


def build_segments(
    window: SessionWindow,
    events: Sequence[BehaviorEvent],
    as_of: Optional[datetime] = None,
) -> List[TimeSegment]:
    """
    Convert an ordered event timeline into segments covering [start, end).

    A session without events yields a single segment flagged ``has_signal=False``.
    Events must already be ordered by timestamp; violations raise
    :class:`MalformedEventError`.
    """

    end = resolve_session_end(window, events, as_of)
    validate_events(window, events, end)
    if end == window.start:
        return []

    if not events:
        return [
            TimeSegment(
                session_id=window.session_id,
                index=0,
                start=window.start,
                end=end,
                state=SegmentState(),
                context=None,
                has_signal=False,
            )
        ]

    segments: List[TimeSegment] = []
    state = SegmentState()
    seg_state = state
    seg_start = window.start
    context: Optional[BehaviorType] = None
    bucket: List[BehaviorEvent] = []

    for event in events:
        # A boundary at the closing instant would open an empty segment.
        opens = _opens_segment(state, event) and event.timestamp < end
        if opens and event.timestamp > seg_start:
            segments.append(
                TimeSegment(
                    session_id=window.session_id,
                    index=len(segments),
                    start=seg_start,
                    end=event.timestamp,
                    state=seg_state,
                    context=context,
                    events=tuple(bucket),
                )
            )
            seg_start = event.timestamp
            bucket = []

        state = apply_event(state, event)
        if opens:
            seg_state = state
            context = event.behavior_type
        elif seg_state.device_fingerprint is None and state.device_fingerprint is not None:
            seg_state = replace(seg_state, device_fingerprint=state.device_fingerprint)
        bucket.append(event)

    segments.append(
        TimeSegment(
            session_id=window.session_id,
            index=len(segments),
            start=seg_start,
            end=end,
            state=seg_state,
            context=context,
            events=tuple(bucket),
        )
    )

    logger.debug("Built %d segments for session %s", len(segments), window.session_id)
    return segments
