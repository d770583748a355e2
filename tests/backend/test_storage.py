"""
Tests for note storage and the JSON-table stores.
"""

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from errors import JobNotFoundError, NoteNotFoundError, WorkflowNotFoundError
from models import (
    HistoryRecord,
    InfluenceEdge,
    JobStatus,
    JobType,
    StepProgress,
    StepStatus,
    WorkflowOutcome,
)
from repositories import (
    EmbeddingStore,
    HistoryStore,
    InfluenceStore,
    JobStatusStore,
    WorkflowStatusStore,
)
from storage import JsonTable, NoteStorage


class TestNoteStorage:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = NoteStorage(root=Path(self.temp_dir) / "notes")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_and_get(self):
        record = self.storage.create("Title", "Body", tags=["a"], category="work")

        loaded = self.storage.get(record.id)
        assert loaded.title == "Title"
        assert loaded.content == "Body"
        assert loaded.tags == ["a"]
        assert loaded.category == "work"
        assert loaded.cluster_id is None

    def test_create_with_explicit_id(self):
        record = self.storage.create("T", note_id="projects/alpha")

        assert record.id == "projects/alpha"
        assert self.storage.get("projects/alpha").title == "T"

    def test_get_missing_raises(self):
        with pytest.raises(NoteNotFoundError):
            self.storage.get("missing")
        assert self.storage.find("missing") is None

    def test_update_bumps_updated_at(self):
        record = self.storage.create("T", "old")
        updated = self.storage.update(record.id, content="new")

        assert updated.content == "new"
        assert updated.updated_at > record.updated_at

    def test_update_rejects_unknown_fields(self):
        record = self.storage.create("T")
        with pytest.raises(ValueError):
            self.storage.update(record.id, colour="red")

    def test_cluster_assignment_does_not_touch_updated_at(self):
        record = self.storage.create("T", "body")

        self.storage.assign_cluster_ids({record.id: 3, "ghost": 1})
        assigned = self.storage.get(record.id)
        assert assigned.cluster_id == 3
        assert assigned.updated_at == record.updated_at

        assert self.storage.reset_cluster_ids() == 1
        assert self.storage.get(record.id).cluster_id is None

    def test_get_all_sorted_by_creation(self):
        first = self.storage.create("first")
        second = self.storage.create("second")

        assert [n.id for n in self.storage.get_all()] == [first.id, second.id]
        assert self.storage.count() == 2

    def test_delete(self):
        record = self.storage.create("T")
        assert self.storage.delete(record.id) is True
        assert self.storage.delete(record.id) is False


class TestJsonTables:
    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_table_persists_across_instances(self):
        table = JsonTable(self.temp_dir / "t.json")
        table.put("a", {"value": 1})
        table.put_many([("b", {"value": 2}), ("c", {"value": 3})])

        reloaded = JsonTable(self.temp_dir / "t.json")
        assert reloaded.count() == 3
        assert reloaded.get("b") == {"value": 2}
        assert reloaded.delete_where(lambda r: r["value"] > 1) == 2
        assert reloaded.clear() == 1

    def test_embeddings_are_scoped_by_model_version(self):
        path = self.temp_dir / "embeddings.json"
        v1 = EmbeddingStore(path, "v1")
        v1.save("n1", [1.0, 0.0], "model")

        v2 = EmbeddingStore(path, "v2")
        assert v2.get("n1") is None
        assert v2.count() == 0
        assert v1.get("n1").vector == [1.0, 0.0]

    def test_embedding_save_keeps_created_at(self):
        store = EmbeddingStore(self.temp_dir / "embeddings.json", "v1")
        first = store.save("n1", [1.0], "m")
        second = store.save("n1", [0.5], "m")

        assert second.created_at == first.created_at
        assert store.get("n1").vector == [0.5]

    def test_influence_edges_unique_per_pair(self):
        store = InfluenceStore(self.temp_dir / "influence.json")
        store.upsert(InfluenceEdge("a", "b", 0.2, 0.4, 0.5))
        store.upsert(InfluenceEdge("a", "b", 0.3, 0.6, 0.5))
        store.upsert(InfluenceEdge("c", "b", 0.9, 0.9, 1.0))

        assert store.count() == 2
        assert [e.source_note_id for e in store.edges_to("b")] == ["c", "a"]
        assert store.get("a", "b").weight == 0.3
        assert store.delete_for_note("b") == 2

    def test_history_semantic_diff_keeps_storage_order(self):
        store = HistoryStore(self.temp_dir / "history.json")
        store.add(HistoryRecord(id="h2", note_id="n", content="", semantic_diff=0.3, created_at=20.0))
        store.add(HistoryRecord(id="h1", note_id="n", content="", semantic_diff=0.2, created_at=10.0))
        store.add(HistoryRecord(id="h3", note_id="n", content="", semantic_diff=None, created_at=30.0))

        assert [r.id for r in store.with_semantic_diff()] == ["h2", "h1"]
        assert [r.id for r in store.for_note("n")] == ["h3", "h2", "h1"]


class TestStatusStores:
    def setup_method(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.jobs = JobStatusStore(self.temp_dir / "jobs.json")
        self.workflows = WorkflowStatusStore(self.temp_dir / "workflows.json")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_job_lifecycle(self):
        job = self.jobs.create_job(JobType.ANALYZE, {"note_id": "n"})
        assert job.status == JobStatus.PENDING

        self.jobs.start_job(job.id)
        self.jobs.update_progress(job.id, 140, "almost")
        running = self.jobs.get(job.id)
        assert running.status == JobStatus.RUNNING
        assert running.progress == 100
        assert running.message == "almost"

        done = self.jobs.complete_job(job.id, {"ok": True})
        assert done.status == JobStatus.COMPLETED
        assert JobStatusStore(self.temp_dir / "jobs.json").get(job.id).result == {"ok": True}

    def test_failed_job_keeps_error(self):
        job = self.jobs.create_job(JobType.CLUSTER_REBUILD, {})
        self.jobs.fail_job(job.id, "kaboom")

        failed = self.jobs.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "kaboom"
        assert [j.id for j in self.jobs.by_status(JobStatus.FAILED)] == [job.id]

    def test_unknown_job(self):
        with pytest.raises(JobNotFoundError):
            self.jobs.get("nope")

    def test_workflow_ids_autoincrement(self):
        first = self.workflows.create("reconstruct", ["a", "b"])
        second = self.workflows.create("reconstruct", ["a"])

        assert (first.id, second.id) == (1, 2)
        assert first.progress["a"].status == StepStatus.PENDING
        assert self.workflows.latest("reconstruct").id == 2

    def test_workflow_step_updates(self):
        record = self.workflows.create("reconstruct", ["a"])
        self.workflows.update_step(record.id, "a", StepProgress(status=StepStatus.COMPLETED))
        self.workflows.set_cluster_job_id(record.id, "job-1")
        self.workflows.finish(record.id, WorkflowOutcome.PARTIAL, "b: failed")

        loaded = WorkflowStatusStore(self.temp_dir / "workflows.json").get(record.id)
        assert loaded.progress["a"].status == StepStatus.COMPLETED
        assert loaded.cluster_job_id == "job-1"
        assert loaded.status == WorkflowOutcome.PARTIAL
        assert loaded.error == "b: failed"
        assert loaded.completed_at is not None

    def test_unknown_workflow(self):
        with pytest.raises(WorkflowNotFoundError):
            self.workflows.get(42)
