"""Service layer coordinating note storage, embeddings, the index and the job queue."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

import structlog

from embedder import Embedder
from errors import EmbeddingNotFoundError, IndexBuildInProgressError
from jobs import JobQueue
from models import (
    AnalyzePayload,
    EmbeddingRecord,
    IndexRebuildPayload,
    JobType,
    NoteRecord,
)
from repositories import (
    DriftEventStore,
    EmbeddingStore,
    HistoryStore,
    InfluenceStore,
    RelationStore,
)
from search import HybridSearchEngine
from storage import NoteStorage
from vector_index import VectorIndex

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


def note_text(note: NoteRecord) -> str:
    return f"{note.title}\n\n{note.content}"


class EmbeddingService:
    """Generates, stores and looks up note embeddings, keeping the index in step."""

    def __init__(
        self,
        storage: NoteStorage,
        embeddings: EmbeddingStore,
        embedder: Embedder | None = None,
        index: VectorIndex | None = None,
    ):
        self.storage = storage
        self.embeddings = embeddings
        self.embedder = embedder or Embedder()
        self.index = index or VectorIndex(embeddings)

    @property
    def model_name(self) -> str:
        return self.embedder.model_name

    def embed_text(self, text: str) -> List[float]:
        return self.embedder.embed(text)

    def generate_for_note(self, note_id: str) -> EmbeddingRecord:
        note = self.storage.get(note_id)
        return self.save(note.id, self.embedder.embed(note_text(note)))

    def save(self, note_id: str, vector: List[float]) -> EmbeddingRecord:
        record = self.embeddings.save(note_id, vector, self.model_name)
        if self.index.is_initialized():
            self.index.upsert(note_id, record.vector)
        return record

    def remove(self, note_id: str) -> bool:
        removed = self.embeddings.delete(note_id)
        if self.index.is_initialized():
            self.index.remove(note_id)
        return removed

    def generate_all(
        self,
        only_missing: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, object]:
        notes = self.storage.get_all()
        if only_missing:
            existing = set(self.embeddings.note_ids())
            notes = [n for n in notes if n.id not in existing]

        success = 0
        failed = 0
        errors: List[str] = []
        for position, note in enumerate(notes, start=1):
            try:
                self.save(note.id, self.embedder.embed(note_text(note)))
                success += 1
            except Exception as exc:
                failed += 1
                errors.append(f"{note.id}: {exc}")
                logger.warning("embedding_generation_failed", note_id=note.id, error=str(exc))
            if on_progress is not None:
                on_progress(position, len(notes))

        logger.info("embeddings_generated", success=success, failed=failed)
        return {"success": success, "failed": failed, "errors": errors}

    def search_similar(self, query: str, limit: int = 10) -> List[Tuple[str, float]]:
        return self.index.search(self.embedder.embed(query), limit)

    def find_similar(self, note_id: str, limit: int = 5) -> List[Tuple[str, float]]:
        record = self.embeddings.get(note_id)
        if record is None:
            raise EmbeddingNotFoundError(note_id)
        matches = self.index.search(record.vector, limit + 1)
        return [(nid, sim) for nid, sim in matches if nid != note_id][:limit]

    def build_index(self) -> Dict[str, float]:
        return self.index.build()

    def run_index_job(self, payload: IndexRebuildPayload) -> Dict[str, object]:
        """INDEX_REBUILD handler: manual requests always rebuild, the rest only when still needed."""
        if payload.reason == "manual":
            return dict(self.build_index(), rebuilt=True)
        return {"rebuilt": self.auto_rebuild_index_if_needed()}

    def auto_rebuild_index_if_needed(self) -> bool:
        if not self.index.should_rebuild():
            return False
        try:
            self.index.build()
        except IndexBuildInProgressError:
            logger.info("vector_index_rebuild_already_running")
            return False
        return True


class NoteService:
    """Note mutations plus the derived-state upkeep each one triggers."""

    def __init__(
        self,
        storage: NoteStorage,
        embeddings: EmbeddingService,
        search: HybridSearchEngine,
        jobs: JobQueue,
        relations: RelationStore,
        influence: InfluenceStore,
        history: HistoryStore,
        drift_events: DriftEventStore,
    ):
        self.storage = storage
        self.embeddings = embeddings
        self.search = search
        self.jobs = jobs
        self.relations = relations
        self.influence = influence
        self.history = history
        self.drift_events = drift_events

    def get_note(self, note_id: str) -> NoteRecord:
        return self.storage.get(note_id)

    def create_note(self, title: str, content: str = "", **fields) -> Tuple[NoteRecord, str]:
        record = self.storage.create(title, content, **fields)
        self.search.invalidate()
        job_id = self.jobs.enqueue(
            JobType.ANALYZE, AnalyzePayload(note_id=record.id, updated_at=record.updated_at)
        )
        return record, job_id

    def update_note(self, note_id: str, **fields) -> Tuple[NoteRecord, Optional[str]]:
        """Store changed fields; enqueue ANALYZE only if title or content changed."""
        before = self.storage.get(note_id)
        changes = {k: v for k, v in fields.items() if v is not None and getattr(before, k) != v}
        if not changes:
            return before, None

        title_changed = "title" in changes
        content_changed = "content" in changes
        # updated_at is the ANALYZE staleness marker, so it only moves together
        # with a new job; metadata edits leave any pending job valid.
        record = self.storage.update(note_id, touch=title_changed or content_changed, **changes)
        self.search.invalidate()
        if not (title_changed or content_changed):
            return record, None

        job_id = self.jobs.enqueue(
            JobType.ANALYZE,
            AnalyzePayload(
                note_id=record.id,
                updated_at=record.updated_at,
                previous_content=before.content if content_changed else None,
                previous_cluster_id=before.cluster_id,
            ),
        )
        return record, job_id

    def delete_note(self, note_id: str) -> Dict[str, object]:
        self.storage.get(note_id)
        self.embeddings.remove(note_id)
        removed = {
            "relations": self.relations.delete_for_note(note_id),
            "influence_edges": self.influence.delete_for_note(note_id),
            "history": self.history.delete_for_note(note_id),
            "drift_events": self.drift_events.delete_for_note(note_id),
        }
        self.storage.delete(note_id)
        self.search.invalidate()

        rebuild_job = None
        if self.embeddings.index.should_rebuild():
            rebuild_job = self.jobs.enqueue(
                JobType.INDEX_REBUILD, IndexRebuildPayload(reason="deleted_ratio")
            )
        logger.info("note_deleted", note_id=note_id, **removed)
        return {"deleted": note_id, "removed": removed, "index_rebuild_job": rebuild_job}
