"""In-memory FIFO job queue drained by a single background worker thread.

``enqueue`` persists a pending status record and returns at once; progress and
outcome are observed by polling ``JobStatusStore``. The queue itself is not
persisted, so pending jobs are lost on restart.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import asdict
from typing import Callable, Dict, Optional

import structlog

from models import PAYLOAD_TYPES, JobPayload, JobRecord, JobType
from repositories import JobStatusStore

logger = structlog.get_logger(__name__)

Progress = Callable[[float, str], None]
Handler = Callable[[JobPayload, Progress], Optional[dict]]

_STOP = object()


class JobQueue:
    def __init__(self, status: JobStatusStore, handlers: Optional[Dict[JobType, Handler]] = None):
        self.status = status
        self._handlers: Dict[JobType, Handler] = dict(handlers or {})
        self._queue: "queue.Queue" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    def register(self, job_type: JobType, handler: Handler) -> None:
        self._handlers[JobType(job_type)] = handler

    def enqueue(self, job_type: JobType, payload: JobPayload) -> str:
        job_type = JobType(job_type)
        expected = PAYLOAD_TYPES[job_type]
        if not isinstance(payload, expected):
            raise TypeError(f"{job_type.value} expects {expected.__name__}, got {type(payload).__name__}")

        record = self.status.create_job(job_type, asdict(payload))
        self._queue.put((record.id, job_type, payload))
        self._ensure_worker()
        logger.info("job_enqueued", job_id=record.id, job_type=job_type.value)
        return record.id

    def get_job(self, job_id: str) -> JobRecord:
        return self.status.get(job_id)

    def pending_count(self) -> int:
        return self._queue.qsize()

    def join(self) -> None:
        """Block until every job enqueued so far has finished."""
        self._queue.join()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        with self._worker_lock:
            worker = self._worker
            if worker is None or not worker.is_alive():
                return
            self._queue.put(_STOP)
        worker.join(timeout)
        logger.info("job_worker_stopped")

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._drain, name="noteloom-jobs", daemon=True)
            self._worker.start()
            logger.info("job_worker_started")

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._run(*item)
            except Exception as exc:
                # Status store itself failed; keep draining the rest of the queue.
                logger.error("job_bookkeeping_failed", job_id=item[0], error=str(exc))
            finally:
                self._queue.task_done()

    def _run(self, job_id: str, job_type: JobType, payload: JobPayload) -> None:
        self.status.start_job(job_id)
        logger.info("job_started", job_id=job_id, job_type=job_type.value)

        def progress(pct: float, message: str) -> None:
            self.status.update_progress(job_id, pct, message)

        try:
            handler = self._handlers.get(job_type)
            if handler is None:
                raise LookupError(f"No handler registered for {job_type.value}")
            result = handler(payload, progress)
        except Exception as exc:
            self.status.fail_job(job_id, str(exc))
            logger.error("job_failed", job_id=job_id, job_type=job_type.value, error=str(exc))
            return

        self.status.complete_job(job_id, result)
        logger.info("job_completed", job_id=job_id, job_type=job_type.value)
