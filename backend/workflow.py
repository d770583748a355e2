"""The multi-step "reconstruct" workflow that refreshes every derived structure."""

from __future__ import annotations

import time
from dataclasses import asdict
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from errors import JobNotFoundError
from jobs import JobQueue
from models import (
    ClusterRebuildPayload,
    JobStatus,
    JobType,
    StepProgress,
    StepStatus,
    WorkflowOutcome,
    WorkflowStatusRecord,
)
from repositories import WorkflowStatusStore

logger = structlog.get_logger(__name__)

WORKFLOW_NAME = "reconstruct"
CLUSTER_STEP = "clusters"
RECONSTRUCT_K = 8

StepFn = Callable[[], Dict[str, object]]

_JOB_TO_STEP = {
    JobStatus.PENDING: StepStatus.ENQUEUED,
    JobStatus.RUNNING: StepStatus.IN_PROGRESS,
    JobStatus.COMPLETED: StepStatus.COMPLETED,
    JobStatus.FAILED: StepStatus.FAILED,
}


def classify(progress: Dict[str, StepProgress]) -> WorkflowOutcome:
    failed = sum(1 for step in progress.values() if step.status == StepStatus.FAILED)
    succeeded = sum(
        1 for step in progress.values()
        if step.status in (StepStatus.COMPLETED, StepStatus.ENQUEUED)
    )
    if failed == 0:
        return WorkflowOutcome.COMPLETED
    if succeeded > 0:
        return WorkflowOutcome.PARTIAL
    return WorkflowOutcome.FAILED


class ReconstructWorkflow:
    """Runs each synchronous step in isolation, then enqueues clustering last.

    Clustering is handed to the job queue rather than run inline so it does
    not contend for the stores while the synchronous steps are writing.
    """

    def __init__(
        self,
        status: WorkflowStatusStore,
        jobs: JobQueue,
        steps: List[Tuple[str, StepFn]],
        cluster_k: int = RECONSTRUCT_K,
    ):
        self.status = status
        self.jobs = jobs
        self.steps = steps
        self.cluster_k = cluster_k

    @property
    def step_names(self) -> List[str]:
        return [name for name, _ in self.steps] + [CLUSTER_STEP]

    def run(self) -> Dict[str, object]:
        record = self.status.create(WORKFLOW_NAME, self.step_names)
        workflow_id = record.id
        errors: List[str] = []
        logger.info("workflow_started", workflow_id=workflow_id, steps=self.step_names)

        for name, step in self.steps:
            progress = StepProgress(status=StepStatus.IN_PROGRESS, started_at=time.time())
            self.status.update_step(workflow_id, name, progress)
            logger.debug("workflow_step_started", workflow_id=workflow_id, step=name)
            try:
                details = step() or {}
            except Exception as exc:
                progress.status = StepStatus.FAILED
                progress.message = str(exc)
                errors.append(f"{name}: {exc}")
                logger.error("workflow_step_failed", workflow_id=workflow_id, step=name, error=str(exc))
            else:
                progress.status = StepStatus.COMPLETED
                progress.details = details
                logger.info("workflow_step_completed", workflow_id=workflow_id, step=name)
            progress.completed_at = time.time()
            self.status.update_step(workflow_id, name, progress)

        cluster_job_id = self._enqueue_clustering(workflow_id, errors)

        record = self.status.get(workflow_id)
        outcome = classify(record.progress)
        self.status.finish(workflow_id, outcome, "; ".join(errors) if errors else None)
        logger.info("workflow_finished", workflow_id=workflow_id, status=outcome.value, errors=len(errors))
        return {
            "workflow_id": workflow_id,
            "status": outcome.value,
            "cluster_job_id": cluster_job_id,
            "steps": {name: step.status.value for name, step in record.progress.items()},
            "errors": errors,
        }

    def _enqueue_clustering(self, workflow_id: int, errors: List[str]) -> Optional[str]:
        progress = StepProgress(status=StepStatus.IN_PROGRESS, started_at=time.time())
        self.status.update_step(workflow_id, CLUSTER_STEP, progress)
        try:
            job_id = self.jobs.enqueue(
                JobType.CLUSTER_REBUILD,
                ClusterRebuildPayload(k=self.cluster_k, regenerate_embeddings=False),
            )
            self.status.set_cluster_job_id(workflow_id, job_id)
        except Exception as exc:
            progress.status = StepStatus.FAILED
            progress.message = str(exc)
            progress.completed_at = time.time()
            errors.append(f"{CLUSTER_STEP}: {exc}")
            self.status.update_step(workflow_id, CLUSTER_STEP, progress)
            logger.error("workflow_step_failed", workflow_id=workflow_id, step=CLUSTER_STEP, error=str(exc))
            return None

        progress.status = StepStatus.ENQUEUED
        progress.details = {"job_id": job_id}
        self.status.update_step(workflow_id, CLUSTER_STEP, progress)
        return job_id

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_status(self, workflow_id: int) -> Dict[str, object]:
        return self._describe(self.status.get(workflow_id))

    def latest_status(self) -> Optional[Dict[str, object]]:
        record = self.status.latest(WORKFLOW_NAME)
        return self._describe(record) if record else None

    def _describe(self, record: WorkflowStatusRecord) -> Dict[str, object]:
        progress = dict(record.progress)
        cluster_job = None
        if record.cluster_job_id:
            try:
                job = self.jobs.get_job(record.cluster_job_id)
            except JobNotFoundError:
                job = None
            if job is not None:
                step = progress.get(CLUSTER_STEP) or StepProgress()
                step.status = _JOB_TO_STEP[job.status]
                step.message = job.error if job.status == JobStatus.FAILED else job.message
                step.details = {**step.details, "job_id": job.id, "progress": job.progress}
                progress[CLUSTER_STEP] = step
                cluster_job = {
                    "id": job.id,
                    "status": job.status.value,
                    "progress": job.progress,
                    "message": job.message,
                    "error": job.error,
                }

        end = record.completed_at or time.time()
        return {
            "id": record.id,
            "workflow": record.workflow,
            "status": record.status.value,
            "progress": {name: asdict(step) for name, step in progress.items()},
            "cluster_job_id": record.cluster_job_id,
            "cluster_job": cluster_job,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
            "elapsed_seconds": round(end - record.started_at, 2),
            "error": record.error,
        }
