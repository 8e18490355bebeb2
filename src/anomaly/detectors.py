# ABOUTME: Independent per-type anomaly detectors over session aggregates.
# ABOUTME: Each detector is a pure function of aggregates and thresholds returning candidates.

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from src.common.config import DetectorThresholds
from src.common.enums import AnomalyType, BehaviorType
from src.common.schemas import AnomalyCandidate

from .aggregates import SessionAggregates

logger = logging.getLogger(__name__)

Detector = Callable[[SessionAggregates, DetectorThresholds], List[AnomalyCandidate]]

MIN_CONCURRENT_DEVICES = 2


def _candidate(
    aggregates: SessionAggregates,
    anomaly_type: AnomalyType,
    description: str,
    data: Dict,
    key: str = "",
) -> AnomalyCandidate:
    return AnomalyCandidate(
        session_id=aggregates.session_id,
        user_id=aggregates.user_id,
        anomaly_type=anomaly_type,
        severity=anomaly_type.default_severity,
        description=description,
        data=data,
        key=key,
    )


def detect_multiple_device(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    if aggregates.concurrent_device_count < MIN_CONCURRENT_DEVICES:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.MULTIPLE_DEVICE,
            f"{aggregates.concurrent_device_count} devices active at the same time",
            {
                "device_count": aggregates.concurrent_device_count,
                "window_start": window.start.isoformat(),
                "window_end": window.end.isoformat(),
                "overlap_seconds": round(window.seconds, 3),
            },
            key=window.start.isoformat(),
        )
        for window in aggregates.concurrent_windows
    ]


def detect_rapid_progress(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    ratio = aggregates.progress_ratio
    if ratio <= thresholds.rapid_progress_ratio:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.RAPID_PROGRESS,
            f"Video advanced {ratio:.2f}x faster than wall-clock time",
            {
                "progress_ratio": round(ratio, 4),
                "speed_threshold": thresholds.rapid_progress_ratio,
                "forward_progress_seconds": round(aggregates.forward_progress_seconds, 3),
                "wall_clock_seconds": round(aggregates.duration_seconds, 3),
            },
        )
    ]


def detect_window_switch(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    count = aggregates.focus_loss_count
    if count <= thresholds.window_switch_count:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.WINDOW_SWITCH,
            f"Window lost focus {count} times",
            {"switch_count": count, "switch_threshold": thresholds.window_switch_count},
        )
    ]


def detect_idle_timeout(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    gap = aggregates.max_idle_gap_seconds
    if gap <= thresholds.idle_gap_seconds:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.IDLE_TIMEOUT,
            f"Learner idle for {gap:.0f}s",
            {"max_idle_seconds": round(gap, 3), "timeout_seconds": thresholds.idle_gap_seconds},
        )
    ]


def detect_face_detect_fail(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    failures = aggregates.max_consecutive_face_failures
    if failures <= thresholds.face_fail_count:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.FACE_DETECT_FAIL,
            f"{failures} consecutive liveness checks failed",
            {"consecutive_failures": failures, "fail_threshold": thresholds.face_fail_count},
        )
    ]


def detect_network_anomaly(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    disconnects = aggregates.network_disconnect_count
    if disconnects <= thresholds.network_disconnect_count:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.NETWORK_ANOMALY,
            f"Network disconnected {disconnects} times",
            {"disconnect_count": disconnects, "disconnect_threshold": thresholds.network_disconnect_count},
        )
    ]


def detect_suspicious_behavior(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    count = aggregates.suspicious_count
    if count <= thresholds.suspicious_behavior_count:
        return []
    flagged = {k: v for k, v in aggregates.behavior_counts.items() if _is_suspicious_type(k)}
    return [
        _candidate(
            aggregates,
            AnomalyType.SUSPICIOUS_BEHAVIOR,
            f"{count} suspicious client actions",
            {"suspicious_count": count, "by_type": flagged, "threshold": thresholds.suspicious_behavior_count},
        )
    ]


def detect_device_change(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    changes = aggregates.device_change_count
    if changes <= thresholds.device_change_count:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.DEVICE_CHANGE,
            f"Device fingerprint changed {changes} times",
            {"change_count": changes, "devices": list(aggregates.device_fingerprints)},
        )
    ]


def detect_ip_change(aggregates: SessionAggregates, thresholds: DetectorThresholds) -> List[AnomalyCandidate]:
    changes = aggregates.ip_change_count
    if changes <= thresholds.ip_change_count:
        return []
    return [
        _candidate(
            aggregates,
            AnomalyType.IP_CHANGE,
            f"IP address changed {changes} times",
            {"change_count": changes, "ip_addresses": list(aggregates.ip_addresses)},
        )
    ]


def _is_suspicious_type(value: str) -> bool:
    return BehaviorType(value).is_suspicious()


DETECTORS: Dict[AnomalyType, Detector] = {
    AnomalyType.MULTIPLE_DEVICE: detect_multiple_device,
    AnomalyType.RAPID_PROGRESS: detect_rapid_progress,
    AnomalyType.WINDOW_SWITCH: detect_window_switch,
    AnomalyType.IDLE_TIMEOUT: detect_idle_timeout,
    AnomalyType.FACE_DETECT_FAIL: detect_face_detect_fail,
    AnomalyType.NETWORK_ANOMALY: detect_network_anomaly,
    AnomalyType.SUSPICIOUS_BEHAVIOR: detect_suspicious_behavior,
    AnomalyType.DEVICE_CHANGE: detect_device_change,
    AnomalyType.IP_CHANGE: detect_ip_change,
}


def run_detectors(
    aggregates: SessionAggregates,
    thresholds: DetectorThresholds,
    types: Optional[Iterable[AnomalyType]] = None,
) -> List[AnomalyCandidate]:
    """Run the selected detectors (all by default) in registry order."""

    selected = list(DETECTORS) if types is None else [t for t in DETECTORS if t in set(types)]
    candidates: List[AnomalyCandidate] = []
    for anomaly_type in selected:
        found = DETECTORS[anomaly_type](aggregates, thresholds)
        if found:
            logger.debug("Session %s: %s fired %d time(s)", aggregates.session_id, anomaly_type.value, len(found))
        candidates.extend(found)
    return candidates
