"""
Tests for the HNSW vector index and its soft-deletion bookkeeping.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import IndexBuildInProgressError, IndexCapacityError, VectorDimensionError
from repositories import EmbeddingStore
from vector_index import VectorIndex

DIM = 8


def unit(i, dim=DIM):
    v = np.zeros(dim)
    v[i % dim] = 1.0
    v[(i + 1) % dim] = 0.1 * (i // dim + 1)
    return (v / np.linalg.norm(v)).tolist()


class TestVectorIndex:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.embeddings = EmbeddingStore(Path(self.temp_dir) / "embeddings.json", "test")
        self.index = VectorIndex(self.embeddings, dim=DIM, max_elements=100)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed(self, count):
        for i in range(count):
            self.embeddings.save(f"n{i}", unit(i), "m")

    def test_build_indexes_all_embeddings(self):
        self._seed(10)
        result = self.index.build()

        assert result["indexed"] == 10
        assert self.index.is_initialized()
        assert self.index.search(unit(3), 1)[0][0] == "n3"

    def test_search_scores_are_cosine(self):
        self._seed(5)
        self.index.build()

        note_id, score = self.index.search(unit(2), 1)[0]
        assert note_id == "n2"
        assert score == pytest.approx(1.0, abs=1e-5)

    def test_deleted_ratio_and_rebuild_policy(self):
        self._seed(10)
        self.index.build()

        for i in range(2):
            self.index.remove(f"n{i}")
        assert self.index.deleted_ratio() == pytest.approx(0.2)
        assert self.index.should_rebuild() is False

        self.index.remove("n2")
        assert self.index.deleted_ratio() == pytest.approx(0.3)
        assert self.index.should_rebuild() is True

    def test_removed_notes_never_returned(self):
        self._seed(10)
        self.index.build()
        removed = {"n1", "n4", "n7"}
        for note_id in removed:
            assert self.index.remove(note_id) is True

        for i in range(10):
            ids = [nid for nid, _ in self.index.search(unit(i), 10)]
            assert not removed.intersection(ids)
        assert self.index.remove("n1") is False

    def test_upsert_replaces_previous_vector(self):
        self._seed(6)
        self.index.build()

        self.index.upsert("n0", unit(5))
        results = self.index.search(unit(5), 6)
        ids = [nid for nid, _ in results]

        assert ids.count("n0") == 1
        assert set(ids[:2]) == {"n0", "n5"}
        assert self.index.stats()["tombstones"] == 1

    def test_removed_then_readded_note_is_live(self):
        self._seed(4)
        self.index.build()
        self.index.remove("n2")
        self.index.upsert("n2", unit(2))

        assert self.index.search(unit(2), 1)[0][0] == "n2"

    def test_rebuild_compacts_tombstones(self):
        self._seed(10)
        self.index.build()
        self.index.remove("n3")
        self.embeddings.delete("n3")

        self.index.build()
        assert self.index.deleted_count == 0
        assert self.index.indexed_count == 9
        assert self.index.stats()["tombstones"] == 0

    def test_upsert_before_build_is_skipped(self):
        assert self.index.upsert("n0", unit(0)) is False
        assert not self.index.is_initialized()

    def test_linear_fallback_when_not_built(self):
        self._seed(5)

        results = self.index.search(unit(4), 2)
        assert results[0][0] == "n4"
        assert len(results) == 2

    def test_search_on_empty_store(self):
        assert self.index.search(unit(0), 5) == []

    def test_concurrent_build_is_rejected(self):
        self._seed(3)
        self.index._build_lock.acquire()
        try:
            with pytest.raises(IndexBuildInProgressError):
                self.index.build()
        finally:
            self.index._build_lock.release()
        self.index.build()

    def test_dimension_mismatch(self):
        self._seed(3)
        self.index.build()
        with pytest.raises(VectorDimensionError):
            self.index.search([1.0, 0.0], 1)
        with pytest.raises(VectorDimensionError):
            self.index.upsert("x", [1.0, 0.0])

    def test_capacity_is_enforced(self):
        small = VectorIndex(self.embeddings, dim=DIM, max_elements=3)
        self._seed(4)
        with pytest.raises(IndexCapacityError):
            small.build()

    def test_clear_resets_state(self):
        self._seed(3)
        self.index.build()
        self.index.clear()

        assert not self.index.is_initialized()
        assert self.index.deleted_ratio() == 0.0

    def test_superseded_vectors_count_toward_rebuild(self):
        self._seed(2)
        self.index.build()

        for _ in range(20):
            self.index.upsert("n0", unit(0))

        assert self.index.indexed_count == 2
        assert self.index.stats()["tombstones"] == 20
        assert self.index.deleted_ratio() == pytest.approx(20 / 22)
        assert self.index.should_rebuild() is True

        self.index.build()
        assert self.index.deleted_ratio() == 0.0

    def test_repeated_upserts_never_hit_capacity(self):
        small = VectorIndex(self.embeddings, dim=DIM, max_elements=5)
        self._seed(1)
        small.build()

        for i in range(10):
            small.upsert("n0", unit(i))

        assert small.indexed_count == 1
        assert small.search(unit(9), 1)[0][0] == "n0"
        assert small.stats()["tombstones"] < 5

    def test_capacity_counts_live_notes(self):
        small = VectorIndex(self.embeddings, dim=DIM, max_elements=3)
        self._seed(3)
        small.build()
        small.upsert("n0", unit(0))

        with pytest.raises(IndexCapacityError):
            small.upsert("n9", unit(9))

        small.remove("n1")
        assert small.upsert("n9", unit(9)) is True
        assert small.indexed_count == 3
        ids = {nid for nid, _ in small.search(unit(9), 3)}
        assert ids == {"n0", "n2", "n9"}
