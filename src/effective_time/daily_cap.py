# ABOUTME: Enforces the daily ceiling on effective study time across a user's records for one date.
# ABOUTME: Trims the latest records first and is idempotent on an already-capped day.

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Sequence

from src.common.config import DailyCapPolicy
from src.common.schemas import EffectiveStudyRecord

from .records import trim_for_daily_limit

logger = logging.getLogger(__name__)

EPSILON = 1e-6


def daily_effective_total(records: Sequence[EffectiveStudyRecord]) -> float:
    return sum(r.effective_duration for r in records if r.include_in_daily_total)


def enforce_daily_cap(
    records: Sequence[EffectiveStudyRecord],
    policy: DailyCapPolicy,
    at: datetime,
) -> List[EffectiveStudyRecord]:
    """
    Return the day's records with any time above the ceiling reclassified.

    Records keep their input order. Only records counted in the daily total are
    trimmed, newest start time first, until the total equals the ceiling.
    """

    if not records:
        return []
    users = {r.user_id for r in records}
    dates = {r.study_date for r in records}
    if len(users) != 1 or len(dates) != 1:
        raise ValueError(f"Daily cap applies to one user and one date, got users={sorted(users)} dates={sorted(dates)}.")

    total = daily_effective_total(records)
    excess = total - policy.daily_limit_seconds
    if excess <= EPSILON:
        return list(records)

    logger.info(
        "User %s exceeded the daily ceiling on %s by %.1fs",
        next(iter(users)),
        next(iter(dates)).isoformat(),
        excess,
    )

    updated = {r.record_id: r for r in records}
    newest_first = sorted(
        (r for r in records if r.include_in_daily_total and r.effective_duration > 0),
        key=lambda r: (r.start_time, r.record_id),
        reverse=True,
    )
    for record in newest_first:
        if excess <= EPSILON:
            break
        cut = min(excess, record.effective_duration)
        updated[record.record_id] = trim_for_daily_limit(record, cut, at)
        excess -= cut

    return [updated[r.record_id] for r in records]


def changed_records(
    before: Sequence[EffectiveStudyRecord], after: Sequence[EffectiveStudyRecord]
) -> List[EffectiveStudyRecord]:
    previous = {r.record_id: r for r in before}
    return [r for r in after if previous.get(r.record_id) != r]
