"""Daily cluster dynamics and knowledge-base snapshots."""

from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional

import numpy as np
import structlog

from embedder import cosine_similarity, normalize_vector
from models import ClusterDynamicsRecord, KnowledgeSnapshot
from repositories import (
    ClusterDynamicsStore,
    ClusterStore,
    EmbeddingStore,
    HistoryStore,
    InfluenceStore,
    RelationStore,
    SnapshotStore,
)
from storage import NoteStorage

logger = structlog.get_logger(__name__)


def today() -> str:
    return dt.date.today().isoformat()


def _previous_day(date: str) -> str:
    return (dt.date.fromisoformat(date) - dt.timedelta(days=1)).isoformat()


def capture_cluster_dynamics(
    storage: NoteStorage,
    embeddings: EmbeddingStore,
    clusters: ClusterStore,
    dynamics: ClusterDynamicsStore,
    date: Optional[str] = None,
) -> List[ClusterDynamicsRecord]:
    """Compute centroid, cohesion, interactions and stability for each cluster.

    Re-running for the same date replaces that date's rows.
    """
    date = date or today()
    notes = storage.list_records()

    members: Dict[int, List[List[float]]] = {}
    for record in embeddings.get_all():
        note = notes.get(record.note_id)
        if note is None or note.cluster_id is None or not record.vector:
            continue
        members.setdefault(note.cluster_id, []).append(record.vector)

    centroids = {
        cluster_id: normalize_vector(np.mean(np.asarray(vectors, dtype=np.float32), axis=0)).tolist()
        for cluster_id, vectors in members.items()
    }
    previous = {r.cluster_id: r.centroid for r in dynamics.for_date(_previous_day(date))}

    captured = []
    for cluster in sorted(clusters.get_all(), key=lambda c: c.id):
        vectors = members.get(cluster.id)
        centroid = centroids.get(cluster.id)
        if not vectors or centroid is None:
            continue

        cohesion = round(sum(cosine_similarity(v, centroid) for v in vectors) / len(vectors), 4)
        interactions = {
            str(other_id): round(cosine_similarity(centroid, other), 4)
            for other_id, other in centroids.items()
            if other_id != cluster.id
        }
        stability = None
        if cluster.id in previous:
            stability = round(1 - cosine_similarity(centroid, previous[cluster.id]), 4)

        captured.append(
            ClusterDynamicsRecord(
                date=date,
                cluster_id=cluster.id,
                centroid=centroid,
                cohesion=cohesion,
                note_count=len(vectors),
                interactions=interactions,
                stability_score=stability,
            )
        )

    dynamics.replace_for_date(date, captured)
    logger.info("cluster_dynamics_captured", date=date, clusters=len(captured))
    return captured


def capture_snapshot(
    storage: NoteStorage,
    embeddings: EmbeddingStore,
    clusters: ClusterStore,
    influence: InfluenceStore,
    relations: RelationStore,
    history: HistoryStore,
    dynamics: ClusterDynamicsStore,
    snapshots: SnapshotStore,
    date: Optional[str] = None,
) -> KnowledgeSnapshot:
    date = date or today()
    cohesions = [r.cohesion for r in dynamics.for_date(date)]
    snapshot = KnowledgeSnapshot(
        date=date,
        note_count=storage.count(),
        embedded_count=embeddings.count(),
        cluster_count=clusters.count(),
        influence_edge_count=influence.count(),
        relation_count=relations.count(),
        history_count=history.count(),
        avg_cohesion=round(sum(cohesions) / len(cohesions), 4) if cohesions else None,
    )
    snapshots.put(snapshot)
    logger.info("snapshot_captured", date=date, notes=snapshot.note_count)
    return snapshot
