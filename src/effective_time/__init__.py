# ABOUTME: Groups the effective study time engine: segments, classification, aggregation, capping.
# ABOUTME: Re-exports the pure computation steps; pipeline and CLI are imported by their module paths.

from .aggregation import aggregate_records
from .classifier import ClassificationContext, classify_segments
from .daily_cap import enforce_daily_cap
from .segments import build_segments

__all__ = [
    "aggregate_records",
    "ClassificationContext",
    "classify_segments",
    "enforce_daily_cap",
    "build_segments",
]
