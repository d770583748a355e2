"""Backend application state: every store, worker and service, wired once."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

import structlog

from analyzer import AnalyzeWorker
from clustering import ClusterWorker
from config import Settings, load_settings
from drift import rebuild_drift_events
from dynamics import capture_cluster_dynamics, capture_snapshot
from embedder import Embedder
from errors import IndexBuildInProgressError
from influence import InfluenceGraph
from jobs import JobQueue
from models import JobType
from repositories import (
    ClusterDynamicsStore,
    ClusterStore,
    DriftEventStore,
    EmbeddingStore,
    HistoryStore,
    InfluenceStore,
    JobStatusStore,
    RelationStore,
    SnapshotStore,
    WorkflowStatusStore,
)
from search import HybridSearchEngine
from services import EmbeddingService, NoteService
from storage import NoteStorage
from vector_index import VectorIndex
from workflow import ReconstructWorkflow

logger = structlog.get_logger(__name__)


@dataclass
class AppServices:
    settings: Settings
    storage: NoteStorage
    embeddings: EmbeddingStore
    clusters: ClusterStore
    relations: RelationStore
    influence_edges: InfluenceStore
    history: HistoryStore
    drift_events: DriftEventStore
    dynamics: ClusterDynamicsStore
    snapshots: SnapshotStore
    job_status: JobStatusStore
    workflow_status: WorkflowStatusStore
    embedder: Embedder
    index: VectorIndex
    search: HybridSearchEngine
    embedding_service: EmbeddingService
    influence: InfluenceGraph
    analyzer: AnalyzeWorker
    cluster_worker: ClusterWorker
    jobs: JobQueue
    notes: NoteService
    workflow: ReconstructWorkflow


class NoteloomAppState:
    """Holds the services for one data directory."""

    def __init__(self, settings: Optional[Settings] = None, embedder: Optional[Embedder] = None):
        self._lock = threading.RLock()
        self.settings = settings or load_settings()
        self._services = self._build(self.settings, embedder)

    def current(self) -> AppServices:
        with self._lock:
            return self._services

    def warmup(self) -> bool:
        """Build the vector index from stored embeddings, if there are any."""
        services = self.current()
        if services.embeddings.count() == 0:
            return False
        try:
            services.index.build()
        except IndexBuildInProgressError:
            return False
        return True

    def shutdown(self) -> None:
        self.current().jobs.shutdown(timeout=5)

    @staticmethod
    def _build(settings: Settings, embedder: Optional[Embedder]) -> AppServices:
        tables = settings.tables_dir
        tables.mkdir(parents=True, exist_ok=True)

        storage = NoteStorage(root=settings.notes_dir)
        embeddings = EmbeddingStore(tables / "embeddings.json", settings.model_version)
        clusters = ClusterStore(tables / "clusters.json")
        relations = RelationStore(tables / "relations.json")
        influence_edges = InfluenceStore(tables / "influence_edges.json")
        history = HistoryStore(tables / "history.json")
        drift_events = DriftEventStore(tables / "drift_events.json")
        dynamics = ClusterDynamicsStore(tables / "cluster_dynamics.json")
        snapshots = SnapshotStore(tables / "snapshots.json")
        job_status = JobStatusStore(tables / "jobs.json")
        workflow_status = WorkflowStatusStore(tables / "workflows.json")

        embedder = embedder or Embedder(settings.embed_model, settings.embedding_dim)
        index = VectorIndex(
            embeddings,
            dim=settings.embedding_dim,
            max_elements=settings.index_max_elements,
            m=settings.index_m,
            ef_construction=settings.index_ef_construction,
            ef_search=settings.index_ef_search,
        )
        search = HybridSearchEngine(
            storage,
            index,
            embedder,
            keyword_weight=settings.keyword_weight,
            semantic_weight=settings.semantic_weight,
        )
        embedding_service = EmbeddingService(storage, embeddings, embedder, index)
        influence = InfluenceGraph(
            influence_edges, embeddings, history, decay_lambda=settings.decay_lambda
        )
        analyzer = AnalyzeWorker(
            storage, embedding_service, embeddings, history, relations, influence
        )
        cluster_worker = ClusterWorker(
            storage,
            embeddings,
            clusters,
            embedding_service,
            default_k=settings.default_k,
            random_state=settings.kmeans_seed,
        )

        jobs = JobQueue(job_status)
        jobs.register(JobType.ANALYZE, lambda payload, progress: analyzer.run(payload))
        jobs.register(JobType.CLUSTER_REBUILD, cluster_worker.run)
        jobs.register(JobType.INDEX_REBUILD, lambda payload, progress: embedding_service.run_index_job(payload))

        notes = NoteService(
            storage,
            embedding_service,
            search,
            jobs,
            relations,
            influence_edges,
            history,
            drift_events,
        )
        workflow = ReconstructWorkflow(
            workflow_status,
            jobs,
            steps=[
                ("embeddings", lambda: embedding_service.generate_all()),
                ("fts", search.reindex),
                ("drift_events", lambda: rebuild_drift_events(history, drift_events)),
                ("influence_graph", influence.rebuild),
                (
                    "cluster_dynamics",
                    lambda: {
                        "clusters": len(
                            capture_cluster_dynamics(storage, embeddings, clusters, dynamics)
                        )
                    },
                ),
                (
                    "snapshot",
                    lambda: {
                        "date": capture_snapshot(
                            storage,
                            embeddings,
                            clusters,
                            influence_edges,
                            relations,
                            history,
                            dynamics,
                            snapshots,
                        ).date
                    },
                ),
            ],
        )

        logger.info("app_state_ready", data_dir=str(settings.data_dir), notes=storage.count())
        return AppServices(
            settings=settings,
            storage=storage,
            embeddings=embeddings,
            clusters=clusters,
            relations=relations,
            influence_edges=influence_edges,
            history=history,
            drift_events=drift_events,
            dynamics=dynamics,
            snapshots=snapshots,
            job_status=job_status,
            workflow_status=workflow_status,
            embedder=embedder,
            index=index,
            search=search,
            embedding_service=embedding_service,
            influence=influence,
            analyzer=analyzer,
            cluster_worker=cluster_worker,
            jobs=jobs,
            notes=notes,
            workflow=workflow,
        )
