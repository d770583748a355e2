"""Drift scoring and drift-event reconstruction from note history."""

from __future__ import annotations

import uuid
from typing import Dict, Optional

import structlog

from models import DriftEvent
from repositories import DriftEventStore, HistoryStore

logger = structlog.get_logger(__name__)

MEDIUM_DRIFT_THRESHOLD = 0.25
LARGE_DRIFT_THRESHOLD = 0.50
CLUSTER_JUMP_BONUS = 0.5


def is_cluster_jump(old_cluster_id: Optional[int], new_cluster_id: Optional[int]) -> bool:
    return old_cluster_id is not None and new_cluster_id is not None and old_cluster_id != new_cluster_id


def compute_drift_score(
    semantic_diff: float,
    old_cluster_id: Optional[int] = None,
    new_cluster_id: Optional[int] = None,
) -> float:
    """``semantic_diff * (1 + bonus)`` clamped to [0, 1]; the bonus applies on a cluster jump."""
    bonus = CLUSTER_JUMP_BONUS if is_cluster_jump(old_cluster_id, new_cluster_id) else 0.0
    return max(0.0, min(1.0, semantic_diff * (1 + bonus)))


def classify_drift_event(semantic_diff: float, cluster_jump: bool) -> Optional[str]:
    if cluster_jump:
        return "cluster_shift"
    if semantic_diff >= LARGE_DRIFT_THRESHOLD:
        return "large"
    if semantic_diff >= MEDIUM_DRIFT_THRESHOLD:
        return "medium"
    return None


def severity_for(drift_score: float) -> str:
    if drift_score >= 0.5:
        return "high"
    if drift_score >= 0.3:
        return "mid"
    return "low"


def rebuild_drift_events(history: HistoryStore, events: DriftEventStore) -> Dict[str, object]:
    """Clear drift events and re-derive them from history in chronological order."""
    cleared = events.clear()
    records = sorted(history.with_semantic_diff(), key=lambda r: r.created_at)

    by_type = {"medium": 0, "large": 0, "cluster_shift": 0}
    by_severity = {"high": 0, "mid": 0, "low": 0}
    detected = []
    for record in records:
        jump = is_cluster_jump(record.prev_cluster_id, record.new_cluster_id)
        event_type = classify_drift_event(record.semantic_diff, jump)
        if event_type is None:
            continue
        score = compute_drift_score(record.semantic_diff, record.prev_cluster_id, record.new_cluster_id)
        severity = severity_for(score)
        by_type[event_type] += 1
        by_severity[severity] += 1
        detected.append(
            DriftEvent(
                id=uuid.uuid4().hex,
                note_id=record.note_id,
                history_id=record.id,
                event_type=event_type,
                severity=severity,
                semantic_diff=record.semantic_diff,
                drift_score=round(score, 4),
                prev_cluster_id=record.prev_cluster_id,
                new_cluster_id=record.new_cluster_id,
                created_at=record.created_at,
            )
        )

    inserted = events.add_many(detected)
    logger.info("drift_events_rebuilt", cleared=cleared, detected=len(detected))
    return {
        "cleared": cleared,
        "detected": len(detected),
        "inserted": inserted,
        "by_type": by_type,
        "by_severity": by_severity,
    }
