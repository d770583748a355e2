"""Batch K-means over all note embeddings (the CLUSTER_REBUILD job)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import numpy as np
import structlog
from sklearn.cluster import KMeans

from models import ClusterRebuildPayload, ClusterRecord
from repositories import ClusterStore, EmbeddingStore
from storage import NoteStorage

if TYPE_CHECKING:
    from services import EmbeddingService

logger = structlog.get_logger(__name__)

DEFAULT_K = 8
MIN_K = 2
MIN_NOTES_FOR_CLUSTERING = 3
MAX_ITERATIONS = 100

Progress = Callable[[float, str], None]


def effective_k(requested: Optional[int], note_count: int, default_k: int = DEFAULT_K) -> int:
    """Clamp the requested cluster count to ``[2, min(requested or default, note_count)]``."""
    return max(MIN_K, min(requested or default_k, note_count))


class ClusterWorker:
    def __init__(
        self,
        storage: NoteStorage,
        embeddings: EmbeddingStore,
        clusters: ClusterStore,
        embedding_service: "EmbeddingService",
        default_k: int = DEFAULT_K,
        random_state: Optional[int] = 42,
    ):
        self.storage = storage
        self.embeddings = embeddings
        self.clusters = clusters
        self.embedding_service = embedding_service
        self.default_k = default_k
        self.random_state = random_state

    def run(self, payload: ClusterRebuildPayload, progress: Optional[Progress] = None) -> Dict[str, object]:
        report = progress or (lambda pct, msg: None)
        result: Dict[str, object] = {}

        if payload.regenerate_embeddings:
            report(5, "Generating missing embeddings")
            generated = self.embedding_service.generate_all(only_missing=True)
            result["embeddings"] = {"success": generated["success"], "failed": generated["failed"]}

        records = self.embeddings.get_all()
        if len(records) < MIN_NOTES_FOR_CLUSTERING:
            logger.warning(
                "clustering_skipped",
                count=len(records),
                min_required=MIN_NOTES_FOR_CLUSTERING,
            )
            result.update({"skipped": True, "note_count": len(records)})
            return result

        k = effective_k(payload.k, len(records), self.default_k)
        logger.info("clustering_started", note_count=len(records), k=k)
        report(30, f"Running K-means with k={k}")

        matrix = np.asarray([r.vector for r in records], dtype=np.float64)
        model = KMeans(
            n_clusters=k,
            init="k-means++",
            max_iter=MAX_ITERATIONS,
            n_init=1,
            random_state=self.random_state,
        )
        labels = model.fit_predict(matrix)
        centroids = model.cluster_centers_

        report(70, "Selecting representative notes")
        cluster_records = self._describe_clusters(records, labels, centroids)
        assignments = {record.note_id: int(label) for record, label in zip(records, labels)}

        report(85, "Saving clusters")
        self._persist(cluster_records, assignments)

        sizes = [c.size for c in cluster_records]
        logger.info("clustering_completed", k=k, note_count=len(records), cluster_sizes=sizes)
        result.update({"k": k, "note_count": len(records), "cluster_sizes": sizes})
        return result

    def _describe_clusters(self, records, labels, centroids) -> List[ClusterRecord]:
        matrix = np.asarray([r.vector for r in records], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0

        described = []
        for cluster_id, centroid in enumerate(centroids):
            members = np.flatnonzero(labels == cluster_id)
            sample_note_id = None
            if members.size:
                centroid_norm = np.linalg.norm(centroid) or 1.0
                sims = (matrix[members] @ centroid) / (norms[members] * centroid_norm)
                sample_note_id = records[int(members[int(np.argmax(sims))])].note_id
            described.append(
                ClusterRecord(
                    id=cluster_id,
                    centroid=[float(v) for v in centroid],
                    size=int(members.size),
                    sample_note_id=sample_note_id,
                )
            )
        return described

    def _persist(self, cluster_records: List[ClusterRecord], assignments: Dict[str, int]) -> None:
        # Four separate writes, not atomic: a crash between them leaves notes
        # unassigned and no cluster rows until the next rebuild.
        self.clusters.delete_all()
        self.storage.reset_cluster_ids()
        self.clusters.save_all(cluster_records)
        self.storage.assign_cluster_ids(assignments)
