"""Drift-weighted influence graph.

``influence(A -> B) = cosine(A, B) * drift_score(B)``: when note B drifts, every
semantically close note A is credited with part of that drift.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional

import structlog

from decay import DEFAULT_LAMBDA, MIN_EFFECTIVE_WEIGHT, decay_stats, filter_effective, with_decay
from drift import compute_drift_score
from embedder import cosine_similarity
from models import InfluenceEdge
from repositories import EmbeddingStore, HistoryStore, InfluenceStore

logger = structlog.get_logger(__name__)

INFLUENCE_THRESHOLD = 0.15
MIN_DRIFT_SCORE = 0.1
POINT_QUERY_LIMIT = 10
GRAPH_QUERY_LIMIT = 200
POINT_OVERFETCH = 3
GRAPH_OVERFETCH = 2
TOP_N = 5

DriftScoreFn = Callable[[float, Optional[int], Optional[int]], float]


def _round4(value: float) -> float:
    return round(value, 4)


class InfluenceGraph:
    def __init__(
        self,
        edges: InfluenceStore,
        embeddings: EmbeddingStore,
        history: HistoryStore,
        drift_score: DriftScoreFn = compute_drift_score,
        decay_lambda: float = DEFAULT_LAMBDA,
    ):
        self.edges = edges
        self.embeddings = embeddings
        self.history = history
        self.drift_score = drift_score
        self.decay_lambda = decay_lambda

    def generate_edges(
        self,
        target_note_id: str,
        semantic_diff: float,
        prev_cluster_id: Optional[int] = None,
        new_cluster_id: Optional[int] = None,
    ) -> int:
        """Upsert edges into ``target_note_id``; returns how many were written.

        Pairs under the weight threshold are left alone: an existing edge for
        such a pair is neither refreshed nor deleted.
        """
        target = self.embeddings.get(target_note_id)
        if target is None:
            return 0

        drift = self.drift_score(semantic_diff, prev_cluster_id, new_cluster_id)
        if drift < MIN_DRIFT_SCORE:
            return 0

        now = time.time()
        created = []
        for source in self.embeddings.get_all():
            if source.note_id == target_note_id:
                continue
            cosine = cosine_similarity(source.vector, target.vector)
            weight = _round4(cosine * drift)
            if weight < INFLUENCE_THRESHOLD:
                continue
            created.append(
                InfluenceEdge(
                    source_note_id=source.note_id,
                    target_note_id=target_note_id,
                    weight=weight,
                    cosine_sim=_round4(cosine),
                    drift_score=_round4(drift),
                    created_at=now,
                )
            )

        self.edges.upsert_many(created)
        logger.debug("influence_edges_generated", target=target_note_id, edges=len(created))
        return len(created)

    def remove_edges(self, note_id: str) -> int:
        return self.edges.delete_for_note(note_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def influencers_of(self, note_id: str, limit: int = POINT_QUERY_LIMIT) -> List[InfluenceEdge]:
        """Edges pointing at ``note_id``, strongest first."""
        return self.edges.edges_to(note_id, limit)

    def influenced_by(self, note_id: str, limit: int = POINT_QUERY_LIMIT) -> List[InfluenceEdge]:
        """Edges leaving ``note_id``, strongest first."""
        return self.edges.edges_from(note_id, limit)

    def all_edges(self, limit: int = GRAPH_QUERY_LIMIT) -> List[InfluenceEdge]:
        return self.edges.all_edges(limit)

    def _decayed(
        self,
        raw: List[InfluenceEdge],
        limit: int,
        decay_lambda: Optional[float],
        min_decayed_weight: float,
        now: Optional[float],
    ) -> List[InfluenceEdge]:
        lam = self.decay_lambda if decay_lambda is None else decay_lambda
        decorated = with_decay(raw, lam, now)
        return filter_effective(decorated, min_decayed_weight)[:limit]

    # The raw fetch is a fixed multiple of ``limit``; when decay drops more
    # than that margin the result holds fewer than ``limit`` edges even if
    # more qualifying edges exist further down the raw ordering.
    def influencers_of_with_decay(
        self,
        note_id: str,
        limit: int = POINT_QUERY_LIMIT,
        decay_lambda: Optional[float] = None,
        min_decayed_weight: float = MIN_EFFECTIVE_WEIGHT,
        now: Optional[float] = None,
    ) -> List[InfluenceEdge]:
        raw = self.edges.edges_to(note_id, limit * POINT_OVERFETCH)
        return self._decayed(raw, limit, decay_lambda, min_decayed_weight, now)

    def influenced_by_with_decay(
        self,
        note_id: str,
        limit: int = POINT_QUERY_LIMIT,
        decay_lambda: Optional[float] = None,
        min_decayed_weight: float = MIN_EFFECTIVE_WEIGHT,
        now: Optional[float] = None,
    ) -> List[InfluenceEdge]:
        raw = self.edges.edges_from(note_id, limit * POINT_OVERFETCH)
        return self._decayed(raw, limit, decay_lambda, min_decayed_weight, now)

    def all_edges_with_decay(
        self,
        limit: int = GRAPH_QUERY_LIMIT,
        decay_lambda: Optional[float] = None,
        min_decayed_weight: float = MIN_EFFECTIVE_WEIGHT,
        now: Optional[float] = None,
    ) -> List[InfluenceEdge]:
        raw = self.edges.all_edges(limit * GRAPH_OVERFETCH)
        return self._decayed(raw, limit, decay_lambda, min_decayed_weight, now)

    # ------------------------------------------------------------------
    # Maintenance and statistics
    # ------------------------------------------------------------------
    def rebuild(self) -> Dict[str, int]:
        """Clear all edges and replay every history record with a semantic diff.

        Records are replayed in the order the history store returns them, so
        for a given (source, target) pair the last record processed wins.
        """
        cleared = self.edges.clear()
        edges_created = 0
        processed = set()
        for record in self.history.with_semantic_diff():
            edges_created += self.generate_edges(
                record.note_id,
                record.semantic_diff,
                record.prev_cluster_id,
                record.new_cluster_id,
            )
            processed.add(record.note_id)

        logger.info(
            "influence_graph_rebuilt",
            cleared=cleared,
            edges_created=edges_created,
            notes_processed=len(processed),
        )
        return {"cleared": cleared, "edges_created": edges_created, "notes_processed": len(processed)}

    def stats(self) -> Dict[str, object]:
        edges = self.edges.all_edges()
        total = len(edges)

        def top(side: str) -> List[Dict[str, object]]:
            grouped: Dict[str, Dict[str, float]] = {}
            for edge in edges:
                note_id = getattr(edge, side)
                entry = grouped.setdefault(note_id, {"edge_count": 0, "total_influence": 0.0})
                entry["edge_count"] += 1
                entry["total_influence"] += edge.weight
            ranked = sorted(grouped.items(), key=lambda kv: kv[1]["total_influence"], reverse=True)
            return [
                {
                    "note_id": note_id,
                    "edge_count": int(entry["edge_count"]),
                    "total_influence": _round4(entry["total_influence"]),
                }
                for note_id, entry in ranked[:TOP_N]
            ]

        return {
            "total_edges": total,
            "avg_weight": _round4(sum(e.weight for e in edges) / total) if total else 0.0,
            "max_weight": max((e.weight for e in edges), default=0.0),
            "top_influenced_notes": top("target_note_id"),
            "top_influencers": top("source_note_id"),
        }

    def decay_stats(self, decay_lambda: Optional[float] = None, now: Optional[float] = None) -> Dict[str, float]:
        lam = self.decay_lambda if decay_lambda is None else decay_lambda
        return decay_stats(self.edges.all_edges(), lam, now)
