"""FastAPI entrypoint for the noteloom backend."""

from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from app_state import AppServices, NoteloomAppState
from config import load_settings
from decay import calculate_half_life, resolve_lambda
from drift import rebuild_drift_events
from errors import IndexBuildInProgressError, NotFoundError
from logging_setup import configure_logging
from models import (
    ClusterRebuildPayload,
    ClusterRebuildRequest,
    CreateNoteRequest,
    GenerateEmbeddingsRequest,
    IndexRebuildPayload,
    JobAcceptedPayload,
    JobType,
    NotePayload,
    NoteRecord,
    SearchHit,
    SearchHitPayload,
    SearchResponsePayload,
    UpdateNoteRequest,
)

logger = structlog.get_logger(__name__)

_state: Optional[NoteloomAppState] = None


def get_state() -> NoteloomAppState:
    global _state
    if _state is None:
        _state = NoteloomAppState(load_settings())
    return _state


def set_state(state: Optional[NoteloomAppState]) -> None:
    global _state
    _state = state


def services() -> AppServices:
    return get_state().current()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    state = get_state()
    built = await asyncio.to_thread(state.warmup)
    logger.info("api_started", index_built=built)
    yield
    state.shutdown()


app = FastAPI(
    title="Noteloom Backend",
    description="Semantic engine for a personal knowledge base",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _call(fn, *args, **kwargs):
    """Run blocking service code off the event loop and map domain errors."""
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except IndexBuildInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except Exception as exc:
        logger.exception("request_failed", error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc))


def _note_payload(record: NoteRecord) -> NotePayload:
    return NotePayload(**record.to_dict())


def _hit_payload(hit: SearchHit) -> SearchHitPayload:
    return SearchHitPayload(
        note_id=hit.note_id,
        title=hit.note.title,
        snippet=hit.snippet,
        score=hit.score,
        hybrid_score=hit.hybrid_score,
        sources=hit.sources,
        category=hit.note.category,
        tags=hit.note.tags,
        debug=hit.debug,
    )


@app.get("/", tags=["health"])
async def root():
    return {"status": "ok", "message": "Noteloom backend is running"}


@app.get("/health", tags=["health"])
async def health(svc: AppServices = Depends(services)):
    return {
        "status": "ok",
        "notes": svc.storage.count(),
        "embeddings": svc.embeddings.count(),
        "index_initialized": svc.index.is_initialized(),
        "pending_jobs": svc.jobs.pending_count(),
    }


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


@app.get("/notes", response_model=List[NotePayload], tags=["notes"])
async def list_notes(svc: AppServices = Depends(services)):
    records = await _call(svc.storage.get_all)
    return [_note_payload(r) for r in records]


@app.get("/notes/{note_id}", response_model=NotePayload, tags=["notes"])
async def get_note(note_id: str, svc: AppServices = Depends(services)):
    return _note_payload(await _call(svc.notes.get_note, note_id))


@app.post("/notes", status_code=201, tags=["notes"])
async def create_note(request: CreateNoteRequest, svc: AppServices = Depends(services)):
    record, job_id = await _call(
        svc.notes.create_note,
        request.title,
        request.content,
        note_id=request.note_id,
        tags=request.tags,
        headings=request.headings,
        category=request.category,
    )
    return {"note": _note_payload(record), "job_id": job_id}


@app.patch("/notes/{note_id}", tags=["notes"])
async def update_note(note_id: str, request: UpdateNoteRequest, svc: AppServices = Depends(services)):
    record, job_id = await _call(svc.notes.update_note, note_id, **request.model_dump())
    return {"note": _note_payload(record), "job_id": job_id}


@app.delete("/notes/{note_id}", tags=["notes"])
async def delete_note(note_id: str, svc: AppServices = Depends(services)):
    return await _call(svc.notes.delete_note, note_id)


@app.get("/notes/{note_id}/similar", tags=["notes"])
async def similar_notes(
    note_id: str,
    limit: int = Query(default=5, ge=1, le=50),
    svc: AppServices = Depends(services),
):
    matches = await _call(svc.embedding_service.find_similar, note_id, limit)
    return {"note_id": note_id, "results": [{"note_id": nid, "similarity": round(sim, 4)} for nid, sim in matches]}


@app.get("/notes/{note_id}/relations", tags=["notes"])
async def note_relations(note_id: str, svc: AppServices = Depends(services)):
    await _call(svc.storage.get, note_id)
    return {"note_id": note_id, "relations": [asdict(r) for r in svc.relations.relations_of(note_id)]}


@app.get("/notes/{note_id}/history", tags=["notes"])
async def note_history(note_id: str, svc: AppServices = Depends(services)):
    await _call(svc.storage.get, note_id)
    return {
        "note_id": note_id,
        "history": [asdict(r) for r in svc.history.for_note(note_id)],
        "drift_events": [asdict(e) for e in svc.drift_events.for_note(note_id)],
    }


# ---------------------------------------------------------------------------
# Search and index
# ---------------------------------------------------------------------------


@app.get("/search", response_model=SearchResponsePayload, tags=["search"])
async def search(
    q: str = Query(default=""),
    mode: str = Query(default="hybrid", pattern="^(keyword|semantic|hybrid)$"),
    category: Optional[str] = None,
    tags: Optional[List[str]] = Query(default=None),
    keyword_weight: Optional[float] = Query(default=None, ge=0),
    semantic_weight: Optional[float] = Query(default=None, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    svc: AppServices = Depends(services),
):
    options = {"category": category, "tags": tags}
    if mode == "hybrid":
        options.update(keyword_weight=keyword_weight, semantic_weight=semantic_weight)
    hits = await _call(svc.search.search, q, mode, **options)
    return SearchResponsePayload(mode=mode, results=[_hit_payload(h) for h in hits[:limit]])


@app.post("/search/reindex", tags=["search"])
async def reindex(svc: AppServices = Depends(services)):
    return await _call(svc.search.reindex)


@app.get("/index/stats", tags=["index"])
async def index_stats(svc: AppServices = Depends(services)):
    return svc.index.stats()


@app.post("/index/rebuild", status_code=202, response_model=JobAcceptedPayload, tags=["index"])
async def rebuild_index(svc: AppServices = Depends(services)):
    job_id = await _call(svc.jobs.enqueue, JobType.INDEX_REBUILD, IndexRebuildPayload(reason="manual"))
    return JobAcceptedPayload(job_id=job_id)


@app.post("/embeddings/generate", tags=["index"])
async def generate_embeddings(
    request: GenerateEmbeddingsRequest = GenerateEmbeddingsRequest(),
    svc: AppServices = Depends(services),
):
    return await _call(svc.embedding_service.generate_all, request.only_missing)


# ---------------------------------------------------------------------------
# Clusters and jobs
# ---------------------------------------------------------------------------


@app.get("/clusters", tags=["clusters"])
async def clusters(svc: AppServices = Depends(services)):
    return {"clusters": [asdict(c) for c in sorted(svc.clusters.get_all(), key=lambda c: c.id)]}


@app.post("/clusters/rebuild", status_code=202, response_model=JobAcceptedPayload, tags=["clusters"])
async def rebuild_clusters(
    request: ClusterRebuildRequest = ClusterRebuildRequest(),
    svc: AppServices = Depends(services),
):
    payload = ClusterRebuildPayload(k=request.k, regenerate_embeddings=request.regenerate_embeddings)
    job_id = await _call(svc.jobs.enqueue, JobType.CLUSTER_REBUILD, payload)
    return JobAcceptedPayload(job_id=job_id)


@app.get("/clusters/dynamics", tags=["clusters"])
async def cluster_dynamics(date: Optional[str] = None, svc: AppServices = Depends(services)):
    dates = svc.dynamics.dates()
    date = date or (dates[-1] if dates else None)
    rows = svc.dynamics.for_date(date) if date else []
    return {"date": date, "dates": dates, "clusters": [asdict(r) for r in rows]}


@app.get("/snapshots/latest", tags=["clusters"])
async def latest_snapshot(svc: AppServices = Depends(services)):
    snapshot = svc.snapshots.latest()
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No snapshot captured yet")
    return asdict(snapshot)


@app.get("/jobs", tags=["jobs"])
async def recent_jobs(limit: int = Query(default=20, ge=1, le=200), svc: AppServices = Depends(services)):
    return {"jobs": [asdict(j) for j in svc.job_status.recent(limit)]}


@app.get("/jobs/{job_id}", tags=["jobs"])
async def job_status(job_id: str, svc: AppServices = Depends(services)):
    return asdict(await _call(svc.jobs.get_job, job_id))


# ---------------------------------------------------------------------------
# Influence and drift
# ---------------------------------------------------------------------------


def _lambda(svc: AppServices, value: Optional[str]) -> float:
    """Resolve the `lambda` query parameter: a number or a preset name such as `slow`."""
    if value is None:
        return svc.settings.decay_lambda
    try:
        return resolve_lambda(value)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid decay lambda: {value}") from exc


@app.get("/influence/notes/{note_id}/influencers", tags=["influence"])
async def influencers(
    note_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    decay: bool = False,
    decay_lambda: Optional[str] = Query(default=None, alias="lambda"),
    svc: AppServices = Depends(services),
):
    if decay:
        edges = await _call(
            svc.influence.influencers_of_with_decay, note_id, limit, _lambda(svc, decay_lambda)
        )
    else:
        edges = await _call(svc.influence.influencers_of, note_id, limit)
    return {"note_id": note_id, "edges": [asdict(e) for e in edges]}


@app.get("/influence/notes/{note_id}/influenced", tags=["influence"])
async def influenced(
    note_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    decay: bool = False,
    decay_lambda: Optional[str] = Query(default=None, alias="lambda"),
    svc: AppServices = Depends(services),
):
    if decay:
        edges = await _call(
            svc.influence.influenced_by_with_decay, note_id, limit, _lambda(svc, decay_lambda)
        )
    else:
        edges = await _call(svc.influence.influenced_by, note_id, limit)
    return {"note_id": note_id, "edges": [asdict(e) for e in edges]}


@app.get("/influence/graph", tags=["influence"])
async def influence_graph(
    limit: int = Query(default=200, ge=1, le=2000),
    decay: bool = False,
    decay_lambda: Optional[str] = Query(default=None, alias="lambda"),
    svc: AppServices = Depends(services),
):
    if decay:
        edges = await _call(svc.influence.all_edges_with_decay, limit, _lambda(svc, decay_lambda))
    else:
        edges = await _call(svc.influence.all_edges, limit)
    return {"edges": [asdict(e) for e in edges]}


@app.get("/influence/stats", tags=["influence"])
async def influence_stats(
    decay_lambda: Optional[str] = Query(default=None, alias="lambda"),
    svc: AppServices = Depends(services),
):
    lam = _lambda(svc, decay_lambda)
    stats = await _call(svc.influence.stats)
    stats["decay"] = await _call(svc.influence.decay_stats, lam)
    stats["decay"]["lambda"] = lam
    half_life = calculate_half_life(lam)
    stats["decay"]["half_life_days"] = None if math.isinf(half_life) else round(half_life, 2)
    return stats


@app.post("/influence/rebuild", tags=["influence"])
async def rebuild_influence(svc: AppServices = Depends(services)):
    return await _call(svc.influence.rebuild)


@app.post("/drift/rebuild", tags=["influence"])
async def rebuild_drift(svc: AppServices = Depends(services)):
    return await _call(rebuild_drift_events, svc.history, svc.drift_events)


@app.get("/drift/events", tags=["influence"])
async def drift_events(svc: AppServices = Depends(services)):
    return {"events": [asdict(e) for e in svc.drift_events.all()]}


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@app.post("/workflows/reconstruct", tags=["workflows"])
async def reconstruct(svc: AppServices = Depends(services)):
    return await _call(svc.workflow.run)


@app.get("/workflows/reconstruct/latest", tags=["workflows"])
async def latest_workflow(svc: AppServices = Depends(services)):
    status = await _call(svc.workflow.latest_status)
    if status is None:
        raise HTTPException(status_code=404, detail="No reconstruct workflow has run yet")
    return status


@app.get("/workflows/{workflow_id}", tags=["workflows"])
async def workflow_status(workflow_id: int, svc: AppServices = Depends(services)):
    return await _call(svc.workflow.get_status, workflow_id)


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
