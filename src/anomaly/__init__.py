# ABOUTME: Groups anomaly detection and the anomaly lifecycle.
# ABOUTME: Re-exports session aggregation, the detector registry, and lifecycle transitions.

from .aggregates import SessionAggregates, summarize_session
from .detectors import DETECTORS, run_detectors
from .lifecycle import AnomalyLifecycleManager, transition

__all__ = [
    "SessionAggregates",
    "summarize_session",
    "DETECTORS",
    "run_detectors",
    "AnomalyLifecycleManager",
    "transition",
]
