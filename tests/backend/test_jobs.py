"""
Tests for the background job queue, the ANALYZE worker and note mutations.
"""

import os
import shutil
import sys
import tempfile
import threading
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from app_state import NoteloomAppState
from config import Settings
from errors import NoteNotFoundError
from fakes import KeywordEmbedder
from jobs import JobQueue
from models import (
    AnalyzePayload,
    ClusterRebuildPayload,
    DriftEvent,
    IndexRebuildPayload,
    JobStatus,
    JobType,
    RelationType,
)
from repositories import JobStatusStore


class TestJobQueue:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.status = JobStatusStore(Path(self.temp_dir) / "jobs.json")
        self.queue = JobQueue(self.status)

    def teardown_method(self):
        self.queue.shutdown(timeout=5)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_enqueue_runs_handler(self):
        seen = []

        def handler(payload, progress):
            progress(50, "halfway")
            seen.append(payload.reason)
            return {"ok": True}

        self.queue.register(JobType.INDEX_REBUILD, handler)
        job_id = self.queue.enqueue(JobType.INDEX_REBUILD, IndexRebuildPayload(reason="test"))
        self.queue.join()

        job = self.queue.get_job(job_id)
        assert seen == ["test"]
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.message == "halfway"
        assert job.result == {"ok": True}
        assert job.payload == {"reason": "test"}

    def test_enqueue_returns_before_job_runs(self):
        release = threading.Event()
        self.queue.register(JobType.INDEX_REBUILD, lambda payload, progress: release.wait(5))

        job_id = self.queue.enqueue(JobType.INDEX_REBUILD, IndexRebuildPayload())
        assert self.queue.get_job(job_id).status in (JobStatus.PENDING, JobStatus.RUNNING)

        release.set()
        self.queue.join()
        assert self.queue.get_job(job_id).status == JobStatus.COMPLETED

    def test_failure_is_isolated(self):
        def explode(payload, progress):
            raise RuntimeError("cluster backend down")

        self.queue.register(JobType.CLUSTER_REBUILD, explode)
        self.queue.register(JobType.INDEX_REBUILD, lambda payload, progress: {"indexed": 0})

        failed_id = self.queue.enqueue(JobType.CLUSTER_REBUILD, ClusterRebuildPayload())
        ok_id = self.queue.enqueue(JobType.INDEX_REBUILD, IndexRebuildPayload())
        self.queue.join()

        failed = self.queue.get_job(failed_id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "cluster backend down"
        assert self.queue.get_job(ok_id).status == JobStatus.COMPLETED

    def test_jobs_run_in_fifo_order(self):
        order = []
        self.queue.register(JobType.INDEX_REBUILD, lambda payload, progress: order.append(payload.reason))

        for reason in ["one", "two", "three"]:
            self.queue.enqueue(JobType.INDEX_REBUILD, IndexRebuildPayload(reason=reason))
        self.queue.join()

        assert order == ["one", "two", "three"]

    def test_missing_handler_fails_job(self):
        job_id = self.queue.enqueue(JobType.INDEX_REBUILD, IndexRebuildPayload())
        self.queue.join()

        job = self.queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert "No handler" in job.error

    def test_payload_type_is_checked(self):
        with pytest.raises(TypeError):
            self.queue.enqueue(JobType.ANALYZE, IndexRebuildPayload())
        assert self.status.recent() == []


class TestAnalyzeFlow:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        settings = Settings(data_dir=Path(self.temp_dir), embedding_dim=64)
        self.state = NoteloomAppState(settings, embedder=KeywordEmbedder(64))
        self.svc = self.state.current()

    def teardown_method(self):
        self.state.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_note_embeds_in_background(self):
        record, job_id = self.svc.notes.create_note("Asyncio", "python event loop coroutines")
        self.svc.jobs.join()

        assert self.svc.jobs.get_job(job_id).status == JobStatus.COMPLETED
        assert self.svc.embeddings.get(record.id) is not None
        assert self.svc.history.count() == 0

    def test_stale_job_has_no_side_effects(self):
        record = self.svc.storage.create("Draft", "first version")
        stale_payload = AnalyzePayload(note_id=record.id, updated_at=record.updated_at)
        self.svc.storage.update(record.id, content="second version")

        result = self.svc.analyzer.run(stale_payload)

        assert result == {"skipped": "stale"}
        assert self.svc.embeddings.count() == 0
        assert self.svc.history.count() == 0
        assert self.svc.relations.count() == 0
        assert self.svc.influence_edges.count() == 0

    def test_only_latest_of_rapid_edits_is_analyzed(self):
        record = self.svc.storage.create("Draft", "v0")
        first = self.svc.storage.update(record.id, content="sourdough bread flour oven")
        first_payload = AnalyzePayload(record.id, first.updated_at, previous_content="v0")
        second = self.svc.storage.update(record.id, content="marathon running pace intervals")
        second_payload = AnalyzePayload(
            record.id, second.updated_at, previous_content="sourdough bread flour oven"
        )

        assert self.svc.analyzer.run(first_payload) == {"skipped": "stale"}
        result = self.svc.analyzer.run(second_payload)

        assert result["note_id"] == record.id
        history = self.svc.history.for_note(record.id)
        assert [h.content for h in history] == ["sourdough bread flour oven"]

    def test_missing_note_is_skipped(self):
        result = self.svc.analyzer.run(AnalyzePayload(note_id="ghost", updated_at=0.0))
        assert result == {"skipped": "note_not_found"}

    def test_significant_edit_records_history_and_influence(self):
        baker, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven starter")
        drifter, _ = self.svc.notes.create_note("Notes", "python asyncio event loop coroutines")
        self.svc.jobs.join()

        _, job_id = self.svc.notes.update_note(drifter.id, content="sourdough bread flour oven starter")
        self.svc.jobs.join()

        result = self.svc.jobs.get_job(job_id).result
        assert result["semantic_diff"] > 0.5
        [history] = self.svc.history.for_note(drifter.id)
        assert history.content == "python asyncio event loop coroutines"
        assert "+sourdough bread flour oven starter" in history.diff
        edge = self.svc.influence_edges.get(baker.id, drifter.id)
        assert edge is not None
        assert edge.weight >= 0.15

    def test_near_duplicates_become_relations(self):
        first, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven starter")
        self.svc.jobs.join()
        second, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven starter")
        self.svc.jobs.join()

        [relation] = self.svc.relations.relations_of(second.id)
        assert relation.target_note_id == first.id
        assert relation.relation_type == RelationType.DERIVED
        assert relation.score >= 0.92

    def test_title_only_edit_skips_history(self):
        record, _ = self.svc.notes.create_note("Old title", "body text here")
        self.svc.jobs.join()

        _, job_id = self.svc.notes.update_note(record.id, title="New title")
        self.svc.jobs.join()

        assert job_id is not None
        assert self.svc.jobs.get_job(job_id).result["semantic_diff"] is None
        assert self.svc.history.count() == 0

    def test_metadata_edit_enqueues_nothing(self):
        record, _ = self.svc.notes.create_note("Title", "body")
        self.svc.jobs.join()

        updated, job_id = self.svc.notes.update_note(record.id, tags=["x"])
        assert job_id is None
        assert updated.tags == ["x"]

        _, job_id = self.svc.notes.update_note(record.id, title="Title")
        assert job_id is None

    def test_metadata_edit_keeps_pending_analysis_valid(self):
        gate = threading.Event()
        self.svc.jobs.register(JobType.CLUSTER_REBUILD, lambda payload, progress: gate.wait(5))
        self.svc.jobs.enqueue(JobType.CLUSTER_REBUILD, ClusterRebuildPayload())

        record, job_id = self.svc.notes.create_note("Bread", "sourdough bread flour oven")
        updated, tag_job = self.svc.notes.update_note(record.id, tags=["baking"])
        gate.set()
        self.svc.jobs.join()

        assert tag_job is None
        assert updated.updated_at == record.updated_at
        assert self.svc.jobs.get_job(job_id).result["note_id"] == record.id
        assert self.svc.embeddings.get(record.id) is not None

    def test_metadata_edit_is_searchable(self):
        record, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven")
        self.svc.jobs.join()
        assert self.svc.search.keyword_search("baking") == []

        self.svc.notes.update_note(record.id, tags=["baking"])

        assert [hit.note_id for hit in self.svc.search.keyword_search("baking")] == [record.id]

    def test_delete_removes_derived_state(self):
        first, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven starter")
        second, _ = self.svc.notes.create_note("Bread", "sourdough bread flour oven starter")
        self.svc.jobs.join()
        self.svc.drift_events.add_many(
            [
                DriftEvent("d1", second.id, None, "large", "high", 0.6, 0.6),
                DriftEvent("d2", first.id, None, "medium", "mid", 0.3, 0.3),
            ]
        )

        result = self.svc.notes.delete_note(second.id)

        assert result["deleted"] == second.id
        assert result["removed"]["drift_events"] == 1
        assert [e.id for e in self.svc.drift_events.all()] == ["d2"]
        assert self.svc.embeddings.get(second.id) is None
        assert self.svc.relations.relations_of(second.id) == []
        with pytest.raises(NoteNotFoundError):
            self.svc.notes.get_note(second.id)

    def test_delete_missing_note(self):
        with pytest.raises(NoteNotFoundError):
            self.svc.notes.delete_note("ghost")


class TestEmbeddingService:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        settings = Settings(data_dir=Path(self.temp_dir), embedding_dim=64)
        self.state = NoteloomAppState(settings, embedder=KeywordEmbedder(64))
        self.svc = self.state.current()
        self.ids = [
            self.svc.storage.create(f"Note {i}", text).id
            for i, text in enumerate(
                ["sourdough bread flour", "marathon running pace", "python asyncio loop"]
            )
        ]
        self.svc.embedding_service.generate_all()

    def teardown_method(self):
        self.state.shutdown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_search_similar_ranks_by_query(self):
        self.svc.embedding_service.build_index()

        [(note_id, score)] = self.svc.embedding_service.search_similar("marathon pace", limit=1)

        assert note_id == self.ids[1]
        assert score > 0.5

    def test_manual_index_job_always_rebuilds(self):
        result = self.svc.embedding_service.run_index_job(IndexRebuildPayload(reason="manual"))

        assert result["rebuilt"] is True
        assert result["indexed"] == 3

    def test_deleted_ratio_job_rebuilds_only_when_needed(self):
        service = self.svc.embedding_service
        service.build_index()

        assert service.run_index_job(IndexRebuildPayload(reason="deleted_ratio")) == {"rebuilt": False}

        service.remove(self.ids[0])
        assert self.svc.index.should_rebuild()

        assert service.run_index_job(IndexRebuildPayload(reason="deleted_ratio")) == {"rebuilt": True}
        assert self.svc.index.stats()["deleted_count"] == 0
        assert self.svc.index.indexed_count == 2
