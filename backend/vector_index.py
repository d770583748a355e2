"""
Approximate nearest-neighbour index over note embeddings.

Backed by a FAISS HNSW graph using inner product over L2-normalised vectors,
which is the same ordering as cosine similarity. FAISS cannot delete from or
overwrite an HNSW graph, so notes are tracked through an arena of stable slots:

* every note owns one slot; a freed slot goes on a freelist for reuse
* each slot carries a generation counter bumped on removal
* every FAISS position remembers the (slot, generation) it was written for

A position whose slot has moved on (removed, or re-upserted to a new
position) is a tombstone. Tombstones are filtered out of results and only
disappear when ``build()`` compacts the index from the embedding store, or when
an upsert finds the graph physically full and rewrites it from its live vectors.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np
import structlog

from errors import IndexBuildInProgressError, IndexCapacityError, VectorDimensionError
from repositories import EmbeddingStore

logger = structlog.get_logger(__name__)

DIMENSIONS = 384
MAX_ELEMENTS = 100_000
EF_CONSTRUCTION = 200
M = 16
EF_SEARCH = 50
SEARCH_MARGIN = 10
REBUILD_DELETED_RATIO = 0.2


def _as_matrix(vectors: Sequence[Sequence[float]], dim: int) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=np.float32).reshape(-1, dim)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(matrix / norms)


class VectorIndex:
    """HNSW index with soft deletion and a rebuild policy."""

    def __init__(
        self,
        embeddings: EmbeddingStore,
        dim: int = DIMENSIONS,
        max_elements: int = MAX_ELEMENTS,
        m: int = M,
        ef_construction: int = EF_CONSTRUCTION,
        ef_search: int = EF_SEARCH,
    ):
        self.embeddings = embeddings
        self.dim = dim
        self.max_elements = max_elements
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search

        self._lock = threading.RLock()
        self._build_lock = threading.Lock()
        self._index = None
        self._reset_arena()
        self.last_build_time: Optional[float] = None
        self.last_build_duration: Optional[float] = None

    # ------------------------------------------------------------------
    # Arena bookkeeping
    # ------------------------------------------------------------------
    def _reset_arena(self) -> None:
        self._slots: Dict[str, int] = {}
        self._slot_notes: List[Optional[str]] = []
        self._generations: List[int] = []
        self._slot_positions: List[Optional[int]] = []
        self._free_slots: List[int] = []
        self._positions: List[Tuple[int, int]] = []
        self._deleted_count = 0

    def _acquire_slot(self, note_id: str) -> int:
        if self._free_slots:
            slot = self._free_slots.pop()
            self._slot_notes[slot] = note_id
        else:
            slot = len(self._slot_notes)
            self._slot_notes.append(note_id)
            self._generations.append(0)
            self._slot_positions.append(None)
        self._slots[note_id] = slot
        return slot

    def _is_live(self, position: int) -> bool:
        slot, generation = self._positions[position]
        return (
            self._generations[slot] == generation
            and self._slot_positions[slot] == position
        )

    def _new_index(self):
        index = faiss.IndexHNSWFlat(self.dim, self.m, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self.ef_construction
        index.hnsw.efSearch = self.ef_search
        return index

    def _append(self, note_id: str, matrix_row: np.ndarray) -> None:
        slot = self._slots.get(note_id)
        if slot is None and self.indexed_count >= self.max_elements:
            raise IndexCapacityError(self.max_elements)
        if self._index.ntotal >= self.max_elements:
            self._compact()
        if slot is None:
            slot = self._acquire_slot(note_id)
        position = self._index.ntotal
        self._index.add(matrix_row.reshape(1, -1))
        self._positions.append((slot, self._generations[slot]))
        self._slot_positions[slot] = position

    def _compact(self) -> None:
        """Rewrite the graph from its own live vectors, dropping every tombstone."""
        live = [
            (slot, position)
            for slot, position in enumerate(self._slot_positions)
            if position is not None
        ]
        stored = self._index.reconstruct_n(0, self._index.ntotal)
        index = self._new_index()
        self._positions = []
        if live:
            index.add(np.ascontiguousarray(stored[[position for _, position in live]]))
            for new_position, (slot, _) in enumerate(live):
                self._positions.append((slot, self._generations[slot]))
                self._slot_positions[slot] = new_position
        dropped = self._index.ntotal - index.ntotal
        self._index = index
        self._deleted_count = 0
        logger.info("vector_index_compacted", live=len(live), dropped=dropped)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def indexed_count(self) -> int:
        return len(self._slots)

    @property
    def deleted_count(self) -> int:
        return self._deleted_count

    def is_initialized(self) -> bool:
        return self._index is not None and self.indexed_count > 0

    def build(self) -> Dict[str, float]:
        """Rebuild from every stored embedding, compacting away tombstones.

        Raises:
            IndexBuildInProgressError: if another build is running.
        """
        if not self._build_lock.acquire(blocking=False):
            raise IndexBuildInProgressError()
        try:
            started = time.time()
            records = self.embeddings.get_all()
            if len(records) > self.max_elements:
                raise IndexCapacityError(self.max_elements)
            logger.info("vector_index_build_started", embeddings=len(records))

            with self._lock:
                self._index = self._new_index()
                self._reset_arena()
                if records:
                    matrix = _as_matrix([r.vector for r in records], self.dim)
                    for record in records:
                        self._acquire_slot(record.note_id)
                    self._index.add(matrix)
                    for position, record in enumerate(records):
                        slot = self._slots[record.note_id]
                        self._positions.append((slot, self._generations[slot]))
                        self._slot_positions[slot] = position
                self.last_build_time = time.time()
                self.last_build_duration = self.last_build_time - started

            logger.info(
                "vector_index_built",
                indexed=self.indexed_count,
                duration_s=round(self.last_build_duration, 3),
            )
            return {"indexed": self.indexed_count, "duration": self.last_build_duration}
        finally:
            self._build_lock.release()

    def upsert(self, note_id: str, vector: Sequence[float]) -> bool:
        """Add or replace a note's vector. Returns False if the index is not built."""
        if len(vector) != self.dim:
            raise VectorDimensionError(len(vector), self.dim)
        with self._lock:
            if self._index is None:
                logger.debug("vector_index_upsert_skipped", note_id=note_id)
                return False
            self._append(note_id, _as_matrix([vector], self.dim)[0])
            return True

    def remove(self, note_id: str) -> bool:
        with self._lock:
            slot = self._slots.pop(note_id, None)
            if slot is None:
                return False
            self._generations[slot] += 1
            self._slot_positions[slot] = None
            self._slot_notes[slot] = None
            self._free_slots.append(slot)
            self._deleted_count += 1
            return True

    def search(
        self, query_vector: Sequence[float], limit: int = 10, ef: Optional[int] = None
    ) -> List[Tuple[str, float]]:
        """Return up to ``limit`` ``(note_id, similarity)`` pairs, best first.

        Falls back to a linear scan over the embedding store when the index is
        not built or empty.
        """
        if limit <= 0:
            return []
        if len(query_vector) != self.dim:
            raise VectorDimensionError(len(query_vector), self.dim)

        with self._lock:
            if not self.is_initialized():
                return self._linear_search(query_vector, limit)

            total = self._index.ntotal
            dead = self.tombstones
            fetch = min(limit + dead + SEARCH_MARGIN, total)
            self._index.hnsw.efSearch = max(ef or self.ef_search, fetch)
            query = _as_matrix([query_vector], self.dim)
            scores, positions = self._index.search(query, fetch)

            results: List[Tuple[str, float]] = []
            for score, position in zip(scores[0], positions[0]):
                if position < 0 or not self._is_live(int(position)):
                    continue
                slot, _ = self._positions[int(position)]
                # Inner product of unit vectors; equals 1 - cosine distance.
                results.append((self._slot_notes[slot], float(score)))
                if len(results) >= limit:
                    break
            return results

    def _linear_search(self, query_vector: Sequence[float], limit: int) -> List[Tuple[str, float]]:
        records = self.embeddings.get_all()
        if not records:
            return []
        logger.debug("vector_index_linear_scan", embeddings=len(records))
        matrix = _as_matrix([r.vector for r in records], self.dim)
        query = _as_matrix([query_vector], self.dim)[0]
        scores = matrix @ query
        order = np.argsort(-scores)[:limit]
        return [(records[i].note_id, float(scores[i])) for i in order]

    @property
    def tombstones(self) -> int:
        """Dead graph positions: removed notes plus vectors superseded by an upsert."""
        if self._index is None:
            return 0
        return self._index.ntotal - self.indexed_count

    def deleted_ratio(self) -> float:
        if self._index is None or self._index.ntotal == 0:
            return 0.0
        return self.tombstones / self._index.ntotal

    def should_rebuild(self) -> bool:
        return self.deleted_ratio() > REBUILD_DELETED_RATIO

    def clear(self) -> None:
        with self._lock:
            self._index = None
            self._reset_arena()
            logger.info("vector_index_cleared")

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "is_initialized": self.is_initialized(),
                "indexed_count": self.indexed_count,
                "deleted_count": self._deleted_count,
                "tombstones": self.tombstones,
                "deleted_ratio": round(self.deleted_ratio(), 4),
                "should_rebuild": self.should_rebuild(),
                "max_elements": self.max_elements,
                "dimensions": self.dim,
                "m": self.m,
                "ef_construction": self.ef_construction,
                "ef_search": self.ef_search,
                "last_build_time": self.last_build_time,
                "last_build_duration": self.last_build_duration,
            }
