# ABOUTME: Tabular anomaly reporting for batch runs and reviewers.
# ABOUTME: Builds DataFrames and distribution summaries from tracked anomalies.

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Sequence

import pandas as pd

from src.common.enums import AnomalySeverity
from src.common.schemas import LearnAnomaly

from .lifecycle import is_overdue, processing_duration

REPORT_COLUMNS = [
    "anomaly_id",
    "session_id",
    "user_id",
    "anomaly_type",
    "category",
    "severity",
    "severity_weight",
    "status",
    "description",
    "detect_time",
    "resolved_by",
    "resolve_time",
    "processing_seconds",
    "overdue",
]


def generate_anomaly_report(anomalies: Sequence[LearnAnomaly], now: Optional[datetime] = None) -> pd.DataFrame:
    """One row per anomaly, most severe first, then by detection time."""

    rows = [
        {
            "anomaly_id": a.anomaly_id,
            "session_id": a.session_id,
            "user_id": a.user_id,
            "anomaly_type": a.anomaly_type.value,
            "category": a.anomaly_type.category,
            "severity": a.severity.value,
            "severity_weight": a.severity.weight,
            "status": a.status.value,
            "description": a.description,
            "detect_time": a.detect_time,
            "resolved_by": a.resolved_by,
            "resolve_time": a.resolve_time,
            "processing_seconds": processing_duration(a),
            "overdue": is_overdue(a, now) if now is not None else False,
        }
        for a in anomalies
    ]
    report = pd.DataFrame(rows, columns=REPORT_COLUMNS)
    if report.empty:
        return report
    return report.sort_values(
        ["severity_weight", "detect_time", "anomaly_id"], ascending=[False, True, True], kind="mergesort"
    ).reset_index(drop=True)


def summarize_anomalies(anomalies: Sequence[LearnAnomaly]) -> Dict:
    """Counts by type, severity, and status plus resolution statistics."""

    report = generate_anomaly_report(anomalies)
    if report.empty:
        return {
            "total": 0,
            "by_type": {},
            "by_severity": {},
            "by_status": {},
            "high_priority": 0,
            "resolved": 0,
            "auto_resolved": 0,
            "avg_processing_seconds": None,
        }

    severity_order = [s.value for s in AnomalySeverity.sorted_by_weight()]
    by_severity = report["severity"].value_counts()
    processed = report["processing_seconds"].dropna()
    resolved = report[report["status"] == "resolved"]

    return {
        "total": int(len(report)),
        "by_type": {str(k): int(v) for k, v in report["anomaly_type"].value_counts().sort_index().items()},
        "by_severity": {s: int(by_severity[s]) for s in severity_order if s in by_severity.index},
        "by_status": {str(k): int(v) for k, v in report["status"].value_counts().sort_index().items()},
        "high_priority": int(report["severity"].isin([AnomalySeverity.HIGH.value, AnomalySeverity.CRITICAL.value]).sum()),
        "resolved": int(len(resolved)),
        "auto_resolved": int((resolved["resolved_by"] == "system").sum()),
        "avg_processing_seconds": round(float(processed.mean()), 3) if not processed.empty else None,
    }
