# ABOUTME: Computes bounded focus, interaction, continuity, and quality scores for study windows.
# ABOUTME: Weights come from configuration; empty denominators score zero instead of failing.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from src.common.config import ScoringWeights
from src.common.enums import InvalidTimeReason
from src.common.schemas import Interval, SegmentClassification

from .intervals import clip

GAP_REASONS = (InvalidTimeReason.IDLE_TIMEOUT, InvalidTimeReason.INTERACTION_TIMEOUT)


@dataclass(frozen=True)
class StudyScores:
    quality: float
    focus: float
    interaction: float
    continuity: float


@dataclass(frozen=True)
class ScoreInputs:
    """Raw measurements a window is scored from."""

    total_seconds: float
    effective_seconds: float
    unfocused_seconds: float
    meaningful_interactions: int
    gap_seconds: float


def _clamp(value: float, lower: float, upper: float) -> float:
    if np.isnan(value):
        return lower
    return float(np.clip(value, lower, upper))


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def compute_scores(inputs: ScoreInputs, weights: ScoringWeights) -> StudyScores:
    focus = _clamp(1.0 - _ratio(inputs.unfocused_seconds, inputs.total_seconds), 0.0, 1.0)
    if inputs.total_seconds <= 0:
        focus = 0.0

    effective_minutes = inputs.effective_seconds / 60.0
    interaction = _clamp(
        _ratio(inputs.meaningful_interactions, effective_minutes * weights.interaction_target_per_minute),
        0.0,
        1.0,
    )

    continuity_base = inputs.effective_seconds + inputs.gap_seconds
    continuity = 0.0 if continuity_base <= 0 else _clamp(1.0 - inputs.gap_seconds / continuity_base, 0.0, 1.0)

    effective_ratio = _clamp(_ratio(inputs.effective_seconds, inputs.total_seconds), 0.0, 1.0)

    weight_sum = weights.focus + weights.interaction + weights.continuity + weights.effective_ratio
    blended = _ratio(
        weights.focus * focus
        + weights.interaction * interaction
        + weights.continuity * continuity
        + weights.effective_ratio * effective_ratio,
        weight_sum,
    )
    quality = _clamp(10.0 * blended, 0.0, 10.0)

    return StudyScores(
        quality=round(quality, 4),
        focus=round(focus, 4),
        interaction=round(interaction, 4),
        continuity=round(continuity, 4),
    )


def measure_window(
    classifications: Sequence[SegmentClassification],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    effective_seconds: Optional[float] = None,
) -> ScoreInputs:
    """
    Collect score inputs from classified segments, optionally restricted to [start, end).

    ``effective_seconds`` overrides the measured effective time, e.g. after a
    whole-course invalidation zeroed the record.
    """

    if not classifications:
        return ScoreInputs(0.0, 0.0, 0.0, 0, 0.0)
    lo = start or classifications[0].segment.start
    hi = end or classifications[-1].segment.end

    total = 0.0
    invalid = 0.0
    unfocused = 0.0
    gaps = 0.0
    meaningful = 0
    for result in classifications:
        segment = result.segment
        piece = clip(Interval(segment.start, segment.end), lo, hi)
        if piece is None:
            continue
        total += piece.seconds
        if not segment.state.focused or not segment.state.visible:
            unfocused += piece.seconds
        for interval in result.invalid_intervals:
            overlap = clip(Interval(interval.start, interval.end), lo, hi)
            if overlap is None:
                continue
            invalid += overlap.seconds
            if interval.reason in GAP_REASONS:
                gaps += overlap.seconds
        meaningful += sum(
            1 for e in segment.events if lo <= e.timestamp < hi and e.behavior_type.is_meaningful_interaction()
        )

    effective = max(0.0, total - invalid) if effective_seconds is None else effective_seconds
    return ScoreInputs(
        total_seconds=total,
        effective_seconds=effective,
        unfocused_seconds=unfocused,
        meaningful_interactions=meaningful,
        gap_seconds=gaps,
    )
