"""The per-note ANALYZE job: embedding, history, relations and influence edges."""

from __future__ import annotations

import difflib
import time
import uuid
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from embedder import cosine_similarity, semantic_change_score
from influence import InfluenceGraph
from models import AnalyzePayload, HistoryRecord, RelationRecord, RelationType
from repositories import EmbeddingStore, HistoryStore, RelationStore
from storage import NoteStorage

if TYPE_CHECKING:
    from services import EmbeddingService

logger = structlog.get_logger(__name__)

SEMANTIC_DIFF_THRESHOLD = 0.05
RELATION_SIMILAR_THRESHOLD = 0.85
RELATION_DERIVED_THRESHOLD = 0.92
RELATION_LIMIT = 10


def text_diff(before: str, after: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile="before",
            tofile="after",
        )
    )


class AnalyzeWorker:
    def __init__(
        self,
        storage: NoteStorage,
        embedding_service: "EmbeddingService",
        embeddings: EmbeddingStore,
        history: HistoryStore,
        relations: RelationStore,
        influence: InfluenceGraph,
    ):
        self.storage = storage
        self.embedding_service = embedding_service
        self.embeddings = embeddings
        self.history = history
        self.relations = relations
        self.influence = influence

    def run(self, payload: AnalyzePayload) -> Dict[str, object]:
        note = self.storage.find(payload.note_id)
        if note is None:
            logger.warning("analyze_note_missing", note_id=payload.note_id)
            return {"skipped": "note_not_found"}

        if note.updated_at > payload.updated_at:
            logger.info(
                "analyze_job_stale",
                note_id=note.id,
                note_updated_at=note.updated_at,
                job_updated_at=payload.updated_at,
            )
            return {"skipped": "stale"}

        vector = self.embedding_service.embed_text(f"{note.title}\n\n{note.content}")
        self.embedding_service.save(note.id, vector)
        # Re-embedding an indexed note leaves its previous vector behind as a tombstone.
        self.embedding_service.auto_rebuild_index_if_needed()

        semantic_diff: Optional[float] = None
        history_id = None
        if payload.previous_content:
            before = self.embedding_service.embed_text(payload.previous_content)
            semantic_diff = semantic_change_score(before, vector)
            if semantic_diff >= SEMANTIC_DIFF_THRESHOLD:
                record = HistoryRecord(
                    id=uuid.uuid4().hex,
                    note_id=note.id,
                    content=payload.previous_content,
                    diff=text_diff(payload.previous_content, note.content),
                    semantic_diff=semantic_diff,
                    prev_cluster_id=payload.previous_cluster_id,
                    new_cluster_id=note.cluster_id,
                    created_at=time.time(),
                )
                self.history.add(record)
                history_id = record.id

        significant = semantic_diff is not None and semantic_diff >= SEMANTIC_DIFF_THRESHOLD
        relation_count = None
        if not payload.previous_content or significant:
            relation_count = self.rebuild_relations(note.id, vector)

        edges = 0
        if significant:
            edges = self.influence.generate_edges(
                note.id, semantic_diff, payload.previous_cluster_id, note.cluster_id
            )

        logger.debug(
            "analyze_completed",
            note_id=note.id,
            semantic_diff=semantic_diff,
            relations=relation_count,
            influence_edges=edges,
        )
        return {
            "note_id": note.id,
            "semantic_diff": semantic_diff,
            "history_id": history_id,
            "relations": relation_count,
            "influence_edges": edges,
        }

    def rebuild_relations(self, note_id: str, vector: List[float]) -> int:
        """Replace the note's outgoing relations with its closest neighbours."""
        candidates = []
        for other in self.embeddings.get_all():
            if other.note_id == note_id:
                continue
            score = cosine_similarity(vector, other.vector)
            if score < RELATION_SIMILAR_THRESHOLD:
                continue
            relation_type = (
                RelationType.DERIVED if score >= RELATION_DERIVED_THRESHOLD else RelationType.SIMILAR
            )
            candidates.append(
                RelationRecord(
                    source_note_id=note_id,
                    target_note_id=other.note_id,
                    relation_type=relation_type,
                    score=round(score, 4),
                )
            )
        candidates.sort(key=lambda r: r.score, reverse=True)
        return self.relations.replace_for_source(note_id, candidates[:RELATION_LIMIT])
