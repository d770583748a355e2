"""Shared backend models for noteloom.

Domain records are plain dataclasses; they are turned into JSON only at the
storage boundary (see ``storage.JsonTable``) and into pydantic payloads only at
the HTTP boundary (``main.py``).
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _timestamp() -> float:
    return time.time()


# ---------------------------------------------------------------------------
# Notes and derived records
# ---------------------------------------------------------------------------


@dataclass
class NoteRecord:
    """A note as owned by the CRUD layer; the engine writes only ``cluster_id``."""

    id: str
    title: str
    content: str = ""
    tags: List[str] = field(default_factory=list)
    headings: List[str] = field(default_factory=list)
    category: Optional[str] = None
    cluster_id: Optional[int] = None
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "NoteRecord":
        return cls(
            id=raw["id"],
            title=raw.get("title") or "",
            content=raw.get("content", ""),
            tags=list(raw.get("tags") or []),
            headings=list(raw.get("headings") or []),
            category=raw.get("category"),
            cluster_id=raw.get("cluster_id"),
            created_at=raw.get("created_at", time.time()),
            updated_at=raw.get("updated_at", time.time()),
        )


@dataclass
class EmbeddingRecord:
    note_id: str
    vector: List[float]
    model: str
    version: str
    created_at: float = field(default_factory=_timestamp)
    updated_at: float = field(default_factory=_timestamp)


@dataclass
class ClusterRecord:
    id: int
    centroid: List[float]
    size: int
    sample_note_id: Optional[str] = None
    created_at: float = field(default_factory=_timestamp)


class RelationType(str, Enum):
    SIMILAR = "similar"
    DERIVED = "derived"


@dataclass
class RelationRecord:
    source_note_id: str
    target_note_id: str
    relation_type: RelationType
    score: float
    created_at: float = field(default_factory=_timestamp)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RelationRecord":
        data = dict(raw)
        data["relation_type"] = RelationType(data["relation_type"])
        return cls(**data)


@dataclass
class InfluenceEdge:
    """Directed edge: a drift in ``target`` attributed to proximity to ``source``.

    The ``decayed_weight``/``days_since_creation``/``decay_factor`` fields are
    only filled by the decay-aware queries.
    """

    source_note_id: str
    target_note_id: str
    weight: float
    cosine_sim: float
    drift_score: float
    created_at: float = field(default_factory=_timestamp)
    decayed_weight: Optional[float] = None
    days_since_creation: Optional[float] = None
    decay_factor: Optional[float] = None

    @property
    def key(self):
        return (self.source_note_id, self.target_note_id)


@dataclass
class HistoryRecord:
    id: str
    note_id: str
    content: str
    diff: str = ""
    semantic_diff: Optional[float] = None
    prev_cluster_id: Optional[int] = None
    new_cluster_id: Optional[int] = None
    created_at: float = field(default_factory=_timestamp)


@dataclass
class DriftEvent:
    id: str
    note_id: str
    history_id: Optional[str]
    event_type: str
    severity: str
    semantic_diff: float
    drift_score: float
    prev_cluster_id: Optional[int] = None
    new_cluster_id: Optional[int] = None
    created_at: float = field(default_factory=_timestamp)


@dataclass
class ClusterDynamicsRecord:
    date: str
    cluster_id: int
    centroid: List[float]
    cohesion: float
    note_count: int
    interactions: Dict[str, float] = field(default_factory=dict)
    stability_score: Optional[float] = None
    created_at: float = field(default_factory=_timestamp)


@dataclass
class KnowledgeSnapshot:
    date: str
    note_count: int
    embedded_count: int
    cluster_count: int
    influence_edge_count: int
    relation_count: int
    history_count: int
    avg_cohesion: Optional[float] = None
    created_at: float = field(default_factory=_timestamp)


@dataclass
class SearchHit:
    note: NoteRecord
    score: float
    snippet: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict)
    hybrid_score: Optional[float] = None
    sources: List[str] = field(default_factory=list)

    @property
    def note_id(self) -> str:
        return self.note.id


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobType(str, Enum):
    ANALYZE = "ANALYZE"
    CLUSTER_REBUILD = "CLUSTER_REBUILD"
    INDEX_REBUILD = "INDEX_REBUILD"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AnalyzePayload:
    note_id: str
    updated_at: float
    previous_content: Optional[str] = None
    previous_cluster_id: Optional[int] = None


@dataclass
class ClusterRebuildPayload:
    k: Optional[int] = None
    regenerate_embeddings: bool = True


@dataclass
class IndexRebuildPayload:
    reason: str = "manual"


JobPayload = Union[AnalyzePayload, ClusterRebuildPayload, IndexRebuildPayload]

PAYLOAD_TYPES = {
    JobType.ANALYZE: AnalyzePayload,
    JobType.CLUSTER_REBUILD: ClusterRebuildPayload,
    JobType.INDEX_REBUILD: IndexRebuildPayload,
}


@dataclass
class JobRecord:
    id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    progress: int = 0
    message: Optional[str] = None
    created_at: float = field(default_factory=_timestamp)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "JobRecord":
        data = dict(raw)
        data["type"] = JobType(data["type"])
        data["status"] = JobStatus(data["status"])
        return cls(**data)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ENQUEUED = "enqueued"


class WorkflowOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class StepProgress:
    status: StepStatus = StepStatus.PENDING
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "StepProgress":
        data = dict(raw)
        data["status"] = StepStatus(data.get("status", StepStatus.PENDING))
        return cls(**data)


@dataclass
class WorkflowStatusRecord:
    id: int
    workflow: str
    status: WorkflowOutcome = WorkflowOutcome.RUNNING
    progress: Dict[str, StepProgress] = field(default_factory=dict)
    cluster_job_id: Optional[str] = None
    started_at: float = field(default_factory=_timestamp)
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkflowStatusRecord":
        data = dict(raw)
        data["status"] = WorkflowOutcome(data["status"])
        data["progress"] = {
            name: StepProgress.from_dict(step)
            for name, step in (data.get("progress") or {}).items()
        }
        return cls(**data)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class NotePayload(BaseModel):
    id: str
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    headings: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    cluster_id: Optional[int] = None
    created_at: float
    updated_at: float


class CreateNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: Optional[str] = Field(default=None, alias="note_id")
    title: str
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    headings: List[str] = Field(default_factory=list)
    category: Optional[str] = None


class UpdateNoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[str]] = None
    headings: Optional[List[str]] = None
    category: Optional[str] = None


class SearchHitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    title: str
    snippet: Optional[str] = None
    score: float
    hybrid_score: Optional[float] = None
    sources: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    debug: Dict[str, Any] = Field(default_factory=dict)


class SearchResponsePayload(BaseModel):
    mode: str
    results: List[SearchHitPayload] = Field(default_factory=list)


class ClusterRebuildRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    k: Optional[int] = Field(default=None, ge=2, le=50)
    regenerate_embeddings: bool = Field(default=True, alias="regenerate_embeddings")


class JobAcceptedPayload(BaseModel):
    job_id: str
    status: str = JobStatus.PENDING.value


class GenerateEmbeddingsRequest(BaseModel):
    only_missing: bool = False
