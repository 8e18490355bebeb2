# ABOUTME: Owns the anomaly status machine, auto-resolution policy, and anomaly creation from candidates.
# ABOUTME: All status changes go through transition(); illegal moves raise InvalidTransitionError.

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional

from src.common.config import LifecyclePolicy
from src.common.enums import AnomalySeverity, AnomalyStatus
from src.common.errors import InvalidTransitionError
from src.common.schemas import AnomalyCandidate, EvidenceEntry, LearnAnomaly
from src.common.store import StudyTimeStore, UnknownEntityError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
ANOMALY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "study-time/anomaly")
# Auto-resolution never reaches these, whatever the configuration says.
NEVER_AUTO_RESOLVED = (AnomalySeverity.HIGH, AnomalySeverity.CRITICAL)


def anomaly_id_for(candidate: AnomalyCandidate) -> str:
    """Stable id so re-detecting the same session yields the same anomaly."""
    name = f"{candidate.session_id}:{candidate.anomaly_type.value}:{candidate.key}"
    return str(uuid.uuid5(ANOMALY_NAMESPACE, name))


def create_anomaly(candidate: AnomalyCandidate, detect_time: datetime) -> LearnAnomaly:
    return LearnAnomaly(
        anomaly_id=anomaly_id_for(candidate),
        session_id=candidate.session_id,
        user_id=candidate.user_id,
        anomaly_type=candidate.anomaly_type,
        description=candidate.description,
        data=dict(candidate.data),
        severity=candidate.severity,
        status=AnomalyStatus.DETECTED,
        detect_time=detect_time,
        auto_detected=True,
        evidence=(EvidenceEntry("detector", dict(candidate.data), detect_time),),
    )


def can_transition(anomaly: LearnAnomaly, status: AnomalyStatus) -> bool:
    return anomaly.status.can_transition_to(status)


def transition(
    anomaly: LearnAnomaly,
    status: AnomalyStatus,
    actor: str,
    at: datetime,
    note: Optional[str] = None,
) -> LearnAnomaly:
    """
    Move ``anomaly`` to ``status``.

    Resolving or ignoring records the actor, the note as resolution, and the time.
    Reopening an ignored anomaly clears the previous outcome and keeps its note in
    the processing notes.
    """

    if not can_transition(anomaly, status):
        raise InvalidTransitionError(anomaly.status, status, subject=f"anomaly {anomaly.anomaly_id}")

    if status in (AnomalyStatus.RESOLVED, AnomalyStatus.IGNORED):
        if not note or not note.strip():
            raise ValueError(f"A note is required to mark anomaly {anomaly.anomaly_id} as {status.value}.")
        updated = replace(anomaly, status=status, resolution=note, resolved_by=actor, resolve_time=at)
    else:
        updated = replace(
            anomaly,
            status=status,
            resolution=None,
            resolved_by=actor,
            resolve_time=None,
            processing_notes=_append_note(anomaly.processing_notes, note),
        )

    logger.info(
        "Anomaly %s %s -> %s by %s", anomaly.anomaly_id, anomaly.status.value, status.value, actor
    )
    return updated


def _append_note(existing: Optional[str], note: Optional[str]) -> Optional[str]:
    if not note:
        return existing
    return f"{existing}\n{note}" if existing else note


def mark_as_investigating(anomaly: LearnAnomaly, investigator: str, at: datetime, note: Optional[str] = None) -> LearnAnomaly:
    return transition(anomaly, AnomalyStatus.INVESTIGATING, investigator, at, note)


def mark_as_resolved(anomaly: LearnAnomaly, resolution: str, resolved_by: str, at: datetime) -> LearnAnomaly:
    return transition(anomaly, AnomalyStatus.RESOLVED, resolved_by, at, resolution)


def mark_as_ignored(anomaly: LearnAnomaly, reason: str, ignored_by: str, at: datetime) -> LearnAnomaly:
    return transition(anomaly, AnomalyStatus.IGNORED, ignored_by, at, reason)


def add_evidence(anomaly: LearnAnomaly, kind: str, data: Mapping[str, Any], at: datetime) -> LearnAnomaly:
    return replace(anomaly, evidence=anomaly.evidence + (EvidenceEntry(kind, dict(data), at),))


def processing_duration(anomaly: LearnAnomaly) -> Optional[float]:
    """Seconds from detection to resolution, or None while unresolved."""
    if anomaly.resolve_time is None:
        return None
    return (anomaly.resolve_time - anomaly.detect_time).total_seconds()


def is_high_priority(anomaly: LearnAnomaly) -> bool:
    return anomaly.severity.is_high_priority()


def is_overdue(anomaly: LearnAnomaly, now: datetime) -> bool:
    if not anomaly.status.is_active():
        return False
    return now - anomaly.detect_time > timedelta(hours=anomaly.severity.processing_hours)


def should_auto_resolve(anomaly: LearnAnomaly, policy: LifecyclePolicy) -> bool:
    if not policy.auto_resolve or anomaly.status is not AnomalyStatus.DETECTED:
        return False
    if anomaly.severity in NEVER_AUTO_RESOLVED:
        return False
    return anomaly.severity.weight <= policy.auto_resolve_max_severity.weight


def auto_resolve(anomaly: LearnAnomaly, policy: LifecyclePolicy, at: datetime) -> LearnAnomaly:
    if not should_auto_resolve(anomaly, policy):
        return anomaly
    return transition(anomaly, AnomalyStatus.RESOLVED, SYSTEM_ACTOR, at, policy.auto_resolve_note)


class AnomalyLifecycleManager:
    """Turns detector candidates into tracked anomalies and applies status changes through a store."""

    def __init__(self, store: StudyTimeStore, policy: LifecyclePolicy):
        self.store = store
        self.policy = policy

    def track(self, candidates: Iterable[AnomalyCandidate], detect_time: datetime) -> List[LearnAnomaly]:
        """
        Persist new anomalies for ``candidates`` and auto-resolve those the policy allows.

        An anomaly already tracked under the same id keeps its current state, so
        re-running detection never undoes a reviewer's decision.
        """

        tracked: List[LearnAnomaly] = []
        for candidate in candidates:
            existing = self.store.fetch_anomaly(anomaly_id_for(candidate))
            if existing is not None:
                tracked.append(existing)
                continue
            anomaly = auto_resolve(create_anomaly(candidate, detect_time), self.policy, detect_time)
            self.store.persist_anomaly(anomaly)
            tracked.append(anomaly)
        return tracked

    def transition(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        actor: str,
        at: datetime,
        note: Optional[str] = None,
    ) -> LearnAnomaly:
        anomaly = self.store.fetch_anomaly(anomaly_id)
        if anomaly is None:
            raise UnknownEntityError(f"Unknown anomaly '{anomaly_id}'.")
        updated = transition(anomaly, status, actor, at, note)
        self.store.persist_anomaly(updated)
        return updated

    def overdue(self, anomalies: Iterable[LearnAnomaly], now: datetime) -> List[LearnAnomaly]:
        late = [a for a in anomalies if is_overdue(a, now)]
        return sorted(late, key=lambda a: (-a.severity.weight, a.detect_time))
