# ABOUTME: Runs one unit of work per session or per (user, date) against a StudyTimeStore.
# ABOUTME: Each unit computes in memory, then writes back inside a single transaction.

from __future__ import annotations

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from src.anomaly.aggregates import summarize_session
from src.anomaly.detectors import run_detectors
from src.anomaly.lifecycle import AnomalyLifecycleManager, auto_resolve, create_anomaly
from src.common.config import EngineConfig
from src.common.enums import AnomalyStatus, AnomalyType
from src.common.errors import StudyTimeError
from src.common.schemas import EffectiveStudyRecord, LearnAnomaly, SessionWindow
from src.common.store import StudyTimeStore

from .aggregation import aggregate_records
from .classifier import ClassificationContext, classify_segments
from .daily_cap import changed_records, enforce_daily_cap
from .segments import build_segments, resolve_session_end

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionResult:
    session_id: str
    records: List[EffectiveStudyRecord]
    anomalies: List[LearnAnomaly]


@dataclass
class BatchResult:
    processed: List[SessionResult] = field(default_factory=list)
    capped: List[EffectiveStudyRecord] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def records(self) -> List[EffectiveStudyRecord]:
        return [r for result in self.processed for r in result.records]

    @property
    def anomalies(self) -> List[LearnAnomaly]:
        return [a for result in self.processed for a in result.anomalies]


def course_gate(window: SessionWindow) -> Tuple[bool, bool]:
    """Course-test gate flags a session carries in its metadata."""
    required = bool(window.metadata.get("course_test_required", False))
    completed = bool(window.metadata.get("course_test_completed", True))
    return required, completed


class StudyTimeEngine:
    """
    Classifies sessions and tracks their anomalies against a store.

    Units of work are independent. Recomputing the same session is serialized by
    a per-session lock within this process; other processes must serialize
    themselves.
    """

    def __init__(self, store: StudyTimeStore, config: EngineConfig, clock: Optional[Clock] = None):
        self.store = store
        self.config = config
        self.clock = clock or _utc_now
        self.lifecycle = AnomalyLifecycleManager(store, config.lifecycle)
        # Entries vanish once no caller holds the lock.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def _analyze(self, session_id: str, as_of: Optional[datetime]):
        window = self.store.fetch_session_window(session_id)
        events = self.store.fetch_events(session_id)
        end = resolve_session_end(window, events, as_of)
        devices = self.store.fetch_device_activity(window.user_id, window.start, end)

        segments = build_segments(window, events, as_of)
        required, completed = course_gate(window)
        context = ClassificationContext.from_device_activity(
            devices, course_test_required=required, course_test_completed=completed
        )
        classifications = classify_segments(segments, self.config.classifier, context)
        records = aggregate_records(window, classifications, self.config.scoring)
        aggregates = summarize_session(window, events, devices, as_of)
        return window, end, records, aggregates

    def process_session(
        self,
        session_id: str,
        as_of: Optional[datetime] = None,
        anomaly_types: Optional[Iterable[AnomalyType]] = None,
    ) -> SessionResult:
        """Classify, score, and detect one session, then persist everything in one transaction."""

        with self._session_lock(session_id):
            _, end, records, aggregates = self._analyze(session_id, as_of)
            candidates = run_detectors(aggregates, self.config.detectors, anomaly_types)
            with self.store.transaction():
                self.store.persist_classification(session_id, records)
                anomalies = self.lifecycle.track(candidates, end)

        logger.info(
            "Session %s: %.0fs effective of %.0fs, %d anomaly(ies)",
            session_id,
            sum(r.effective_duration for r in records),
            sum(r.total_duration for r in records),
            len(anomalies),
        )
        return SessionResult(session_id, records, anomalies)

    def detect_session(
        self,
        session_id: str,
        as_of: Optional[datetime] = None,
        anomaly_types: Optional[Iterable[AnomalyType]] = None,
    ) -> List[LearnAnomaly]:
        """Run the detectors for one session without writing anything."""

        _, end, _, aggregates = self._analyze(session_id, as_of)
        candidates = run_detectors(aggregates, self.config.detectors, anomaly_types)
        return [auto_resolve(create_anomaly(c, end), self.config.lifecycle, end) for c in candidates]

    def enforce_daily_cap(self, user_id: str, day: date, at: Optional[datetime] = None) -> List[EffectiveStudyRecord]:
        """Cap one user's day; returns the records that changed."""

        at = at or self.clock()
        with self.store.transaction():
            before = self.store.fetch_daily_records(user_id, day)
            after = enforce_daily_cap(before, self.config.daily_cap, at)
            changed = changed_records(before, after)
            for record in changed:
                self.store.persist_record(record)
        if changed:
            logger.info("Capped %d record(s) for user %s on %s", len(changed), user_id, day.isoformat())
        return changed

    def transition_anomaly(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        actor: str,
        note: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> LearnAnomaly:
        with self.store.transaction():
            return self.lifecycle.transition(anomaly_id, status, actor, at or self.clock(), note)

    def run_batch(
        self,
        session_ids: Sequence[str],
        as_of: Optional[datetime] = None,
        max_workers: int = 1,
        apply_daily_cap: bool = True,
    ) -> BatchResult:
        """
        Process sessions, then cap every (user, date) they touched.

        A failing unit is logged and recorded in ``failures``; the remaining units
        still run. Capping starts only after all sessions are committed.
        """

        result = BatchResult()

        def _one(session_id: str) -> Tuple[str, Optional[SessionResult], Optional[str]]:
            try:
                return session_id, self.process_session(session_id, as_of), None
            except StudyTimeError as exc:
                logger.error("Session %s failed: %s", session_id, exc)
                return session_id, None, f"{type(exc).__name__}: {exc}"

        if max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                outcomes = list(executor.map(_one, session_ids))
        else:
            outcomes = [_one(session_id) for session_id in session_ids]

        days: Set[Tuple[str, date]] = set()
        for session_id, processed, error in outcomes:
            if error is not None:
                result.failures[session_id] = error
                continue
            result.processed.append(processed)
            days.update((r.user_id, r.study_date) for r in processed.records)

        if apply_daily_cap:
            at = as_of or self.clock()
            for user_id, day in sorted(days):
                try:
                    result.capped.extend(self.enforce_daily_cap(user_id, day, at))
                except StudyTimeError as exc:
                    logger.error("Daily cap for %s on %s failed: %s", user_id, day.isoformat(), exc)
                    result.failures[f"{user_id}:{day.isoformat()}"] = f"{type(exc).__name__}: {exc}"

        logger.info(
            "Batch finished: %d processed, %d capped, %d failed",
            len(result.processed),
            len(result.capped),
            len(result.failures),
        )
        return result
