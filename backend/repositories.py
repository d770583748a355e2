"""JSON-table stores for everything the engine derives from notes."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from errors import JobNotFoundError, WorkflowNotFoundError
from models import (
    ClusterDynamicsRecord,
    ClusterRecord,
    DriftEvent,
    EmbeddingRecord,
    HistoryRecord,
    InfluenceEdge,
    JobRecord,
    JobStatus,
    JobType,
    KnowledgeSnapshot,
    RelationRecord,
    StepProgress,
    WorkflowOutcome,
    WorkflowStatusRecord,
)
from storage import JsonTable


def _by_weight(rows: List[Dict[str, Any]], limit: Optional[int]) -> List[InfluenceEdge]:
    rows = sorted(rows, key=lambda r: r["weight"], reverse=True)
    if limit is not None:
        rows = rows[: max(0, limit)]
    return [InfluenceEdge(**row) for row in rows]


class EmbeddingStore:
    """Embeddings keyed by (note id, model version)."""

    def __init__(self, path: Path, model_version: str):
        self.table = JsonTable(path)
        self.model_version = model_version

    def _key(self, note_id: str) -> str:
        return f"{note_id}::{self.model_version}"

    def get(self, note_id: str) -> Optional[EmbeddingRecord]:
        row = self.table.get(self._key(note_id))
        return EmbeddingRecord(**row) if row else None

    def save(self, note_id: str, vector: Sequence[float], model: str) -> EmbeddingRecord:
        now = time.time()
        existing = self.table.get(self._key(note_id))
        record = EmbeddingRecord(
            note_id=note_id,
            vector=[float(v) for v in vector],
            model=model,
            version=self.model_version,
            created_at=existing["created_at"] if existing else now,
            updated_at=now,
        )
        self.table.put(self._key(note_id), asdict(record))
        return record

    def delete(self, note_id: str) -> bool:
        return self.table.delete_where(lambda r: r["note_id"] == note_id) > 0

    def get_all(self) -> List[EmbeddingRecord]:
        return [
            EmbeddingRecord(**row)
            for row in self.table.rows()
            if row["version"] == self.model_version
        ]

    def note_ids(self) -> List[str]:
        return [record.note_id for record in self.get_all()]

    def count(self) -> int:
        return len(self.get_all())


class ClusterStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    def delete_all(self) -> int:
        return self.table.clear()

    def save_all(self, clusters: Iterable[ClusterRecord]) -> int:
        return self.table.put_many((str(c.id), asdict(c)) for c in clusters)

    def get_all(self) -> List[ClusterRecord]:
        return [ClusterRecord(**row) for row in self.table.rows()]

    def get(self, cluster_id: int) -> Optional[ClusterRecord]:
        row = self.table.get(str(cluster_id))
        return ClusterRecord(**row) if row else None

    def count(self) -> int:
        return self.table.count()


class RelationStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    @staticmethod
    def _key(source: str, target: str) -> str:
        return f"{source}->{target}"

    def replace_for_source(self, source_note_id: str, relations: Iterable[RelationRecord]) -> int:
        with self.table.lock:
            self.table.delete_where(lambda r: r["source_note_id"] == source_note_id)
            return self.table.put_many(
                (self._key(r.source_note_id, r.target_note_id), asdict(r)) for r in relations
            )

    def relations_of(self, note_id: str) -> List[RelationRecord]:
        rows = self.table.where(lambda r: r["source_note_id"] == note_id)
        rows.sort(key=lambda r: r["score"], reverse=True)
        return [RelationRecord.from_dict(row) for row in rows]

    def delete_for_note(self, note_id: str) -> int:
        return self.table.delete_where(
            lambda r: note_id in (r["source_note_id"], r["target_note_id"])
        )

    def count(self) -> int:
        return self.table.count()


class InfluenceStore:
    """Influence edges, unique per ordered (source, target) pair."""

    def __init__(self, path: Path):
        self.table = JsonTable(path)

    @staticmethod
    def _key(source: str, target: str) -> str:
        return f"{source}->{target}"

    def upsert(self, edge: InfluenceEdge) -> None:
        self.table.put(self._key(edge.source_note_id, edge.target_note_id), asdict(edge))

    def upsert_many(self, edges: Iterable[InfluenceEdge]) -> int:
        return self.table.put_many(
            (self._key(e.source_note_id, e.target_note_id), asdict(e)) for e in edges
        )

    def get(self, source_note_id: str, target_note_id: str) -> Optional[InfluenceEdge]:
        row = self.table.get(self._key(source_note_id, target_note_id))
        return InfluenceEdge(**row) if row else None

    def edges_to(self, target_note_id: str, limit: Optional[int] = None) -> List[InfluenceEdge]:
        return _by_weight(
            self.table.where(lambda r: r["target_note_id"] == target_note_id), limit
        )

    def edges_from(self, source_note_id: str, limit: Optional[int] = None) -> List[InfluenceEdge]:
        return _by_weight(
            self.table.where(lambda r: r["source_note_id"] == source_note_id), limit
        )

    def all_edges(self, limit: Optional[int] = None) -> List[InfluenceEdge]:
        return _by_weight(self.table.rows(), limit)

    def delete_for_note(self, note_id: str) -> int:
        return self.table.delete_where(
            lambda r: note_id in (r["source_note_id"], r["target_note_id"])
        )

    def clear(self) -> int:
        return self.table.clear()

    def count(self) -> int:
        return self.table.count()


class HistoryStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    def add(self, record: HistoryRecord) -> HistoryRecord:
        self.table.put(record.id, asdict(record))
        return record

    def all(self) -> List[HistoryRecord]:
        return [HistoryRecord(**row) for row in self.table.rows()]

    def for_note(self, note_id: str) -> List[HistoryRecord]:
        rows = self.table.where(lambda r: r["note_id"] == note_id)
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [HistoryRecord(**row) for row in rows]

    def with_semantic_diff(self) -> List[HistoryRecord]:
        """Records carrying a semantic diff, in storage order (not sorted)."""
        return [
            HistoryRecord(**row)
            for row in self.table.rows()
            if row.get("semantic_diff") is not None
        ]

    def delete_for_note(self, note_id: str) -> int:
        return self.table.delete_where(lambda r: r["note_id"] == note_id)

    def count(self) -> int:
        return self.table.count()


class DriftEventStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    def add_many(self, events: Iterable[DriftEvent]) -> int:
        return self.table.put_many((e.id, asdict(e)) for e in events)

    def all(self) -> List[DriftEvent]:
        return [DriftEvent(**row) for row in self.table.rows()]

    def for_note(self, note_id: str) -> List[DriftEvent]:
        return [DriftEvent(**row) for row in self.table.where(lambda r: r["note_id"] == note_id)]

    def delete_for_note(self, note_id: str) -> int:
        return self.table.delete_where(lambda r: r["note_id"] == note_id)

    def clear(self) -> int:
        return self.table.clear()


class ClusterDynamicsStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    def replace_for_date(self, date: str, records: Iterable[ClusterDynamicsRecord]) -> int:
        with self.table.lock:
            self.table.delete_where(lambda r: r["date"] == date)
            return self.table.put_many(
                (f"{r.date}:{r.cluster_id}", asdict(r)) for r in records
            )

    def for_date(self, date: str) -> List[ClusterDynamicsRecord]:
        return [
            ClusterDynamicsRecord(**row)
            for row in self.table.where(lambda r: r["date"] == date)
        ]

    def dates(self) -> List[str]:
        return sorted({row["date"] for row in self.table.rows()})


class SnapshotStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)

    def put(self, snapshot: KnowledgeSnapshot) -> KnowledgeSnapshot:
        self.table.put(snapshot.date, asdict(snapshot))
        return snapshot

    def get(self, date: str) -> Optional[KnowledgeSnapshot]:
        row = self.table.get(date)
        return KnowledgeSnapshot(**row) if row else None

    def latest(self) -> Optional[KnowledgeSnapshot]:
        rows = sorted(self.table.rows(), key=lambda r: r["date"])
        return KnowledgeSnapshot(**rows[-1]) if rows else None


class JobStatusStore:
    """Durable job status records; the runnable queue itself lives in ``jobs``."""

    def __init__(self, path: Path):
        self.table = JsonTable(path)
        self._lock = threading.RLock()

    def _save(self, job: JobRecord) -> JobRecord:
        self.table.put(job.id, asdict(job))
        return job

    def get(self, job_id: str) -> JobRecord:
        row = self.table.get(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return JobRecord.from_dict(row)

    def create_job(self, job_type: JobType, payload: Dict[str, Any]) -> JobRecord:
        return self._save(JobRecord(id=uuid.uuid4().hex, type=JobType(job_type), payload=payload))

    def start_job(self, job_id: str) -> JobRecord:
        with self._lock:
            job = self.get(job_id)
            job.status = JobStatus.RUNNING
            job.started_at = time.time()
            return self._save(job)

    def update_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> JobRecord:
        with self._lock:
            job = self.get(job_id)
            job.progress = int(min(100, max(0, round(progress))))
            if message is not None:
                job.message = message
            return self._save(job)

    def complete_job(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> JobRecord:
        with self._lock:
            job = self.get(job_id)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = result
            job.completed_at = time.time()
            return self._save(job)

    def fail_job(self, job_id: str, error: str) -> JobRecord:
        with self._lock:
            job = self.get(job_id)
            job.status = JobStatus.FAILED
            job.error = error
            job.completed_at = time.time()
            return self._save(job)

    def recent(self, limit: int = 20) -> List[JobRecord]:
        rows = sorted(self.table.rows(), key=lambda r: r["created_at"], reverse=True)
        return [JobRecord.from_dict(row) for row in rows[:limit]]

    def by_status(self, status: JobStatus) -> List[JobRecord]:
        value = JobStatus(status).value
        return [JobRecord.from_dict(r) for r in self.table.where(lambda r: r["status"] == value)]

    def by_type(self, job_type: JobType) -> List[JobRecord]:
        value = JobType(job_type).value
        return [JobRecord.from_dict(r) for r in self.table.where(lambda r: r["type"] == value)]


class WorkflowStatusStore:
    def __init__(self, path: Path):
        self.table = JsonTable(path)
        self._lock = threading.RLock()

    def _save(self, record: WorkflowStatusRecord) -> WorkflowStatusRecord:
        self.table.put(str(record.id), asdict(record))
        return record

    def get(self, workflow_id: int) -> WorkflowStatusRecord:
        row = self.table.get(str(workflow_id))
        if row is None:
            raise WorkflowNotFoundError(workflow_id)
        return WorkflowStatusRecord.from_dict(row)

    def create(self, workflow: str, steps: Sequence[str]) -> WorkflowStatusRecord:
        with self._lock:
            next_id = max((int(key) for key in (r["id"] for r in self.table.rows())), default=0) + 1
            record = WorkflowStatusRecord(
                id=next_id,
                workflow=workflow,
                progress={name: StepProgress() for name in steps},
            )
            return self._save(record)

    def update_step(self, workflow_id: int, step: str, progress: StepProgress) -> WorkflowStatusRecord:
        with self._lock:
            record = self.get(workflow_id)
            record.progress[step] = progress
            return self._save(record)

    def set_cluster_job_id(self, workflow_id: int, job_id: str) -> WorkflowStatusRecord:
        with self._lock:
            record = self.get(workflow_id)
            record.cluster_job_id = job_id
            return self._save(record)

    def finish(
        self, workflow_id: int, status: WorkflowOutcome, error: Optional[str] = None
    ) -> WorkflowStatusRecord:
        with self._lock:
            record = self.get(workflow_id)
            record.status = WorkflowOutcome(status)
            record.error = error
            record.completed_at = time.time()
            return self._save(record)

    def latest(self, workflow: Optional[str] = None) -> Optional[WorkflowStatusRecord]:
        rows = self.table.rows()
        if workflow is not None:
            rows = [r for r in rows if r["workflow"] == workflow]
        if not rows:
            return None
        return WorkflowStatusRecord.from_dict(max(rows, key=lambda r: r["id"]))
