"""High-level render queue API used by the HTTP server and the CLI.

Usage:
    queue = RenderQueue(config)
    job_id = queue.enqueue("My mix", payload)

    worker = queue.create_worker()
    worker.start()

    view = queue.get_job(job_id)
    print(view.status, view.progress)
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .encoders import EncoderProber
from .models import RenderPayload, VizRenderConfig
from .queue import JobStatus, JobStore, JobView, SQLiteJobStore, TERMINAL_STATUSES, WorkerState
from .queue.worker import RenderWorker, WorkerContext

logger = logging.getLogger(__name__)


class RenderQueue:
    """Facade over the job store and worker context.

    Args:
        config: Resolved application config
        store: Job store (default: SQLite at ``queue.db_path``)
        prober: Encoder prober (default: built from ``encoder`` config)
    """

    def __init__(
        self,
        config: Optional[VizRenderConfig] = None,
        store: Optional[JobStore] = None,
        prober: Optional[EncoderProber] = None,
    ):
        self.config = config or VizRenderConfig()
        self.store = store or SQLiteJobStore(str(self.config.queue.db_path))
        self.prober = prober or EncoderProber(
            ffmpeg_path=self.config.encoder.ffmpeg_path,
            force_software=self.config.encoder.force_software,
            timeout_s=self.config.encoder.probe_timeout_s,
        )
        self.context = WorkerContext(self.config, self.store, self.prober)

    def create_worker(self, **kwargs) -> RenderWorker:
        """Build a worker bound to this queue's context.

        Keyword arguments (engine, stitcher) are passed to RenderWorker.
        """
        return RenderWorker(self.context, **kwargs)

    def enqueue(self, label: str, payload: Union[RenderPayload, Dict[str, Any]]) -> str:
        """Store a new pending job.

        Raises:
            pydantic.ValidationError: If the payload does not validate
        """
        if not isinstance(payload, RenderPayload):
            payload = RenderPayload.model_validate(payload)

        job_id = uuid.uuid4().hex
        self.store.add(job_id, label, payload.to_json())
        logger.info("Enqueued job %s (%s)", job_id, label)
        return job_id

    def get_job(self, job_id: str) -> Optional[JobView]:
        job = self.store.get(job_id)
        return JobView.from_job(job) if job else None

    def list_jobs(self) -> List[JobView]:
        """All jobs, newest first, without payloads."""
        return [JobView.from_job(job) for job in self.store.get_all()]

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or rendering job.

        Returns:
            True if the job was cancelled by this call; False for unknown
            or already terminal jobs
        """
        job = self.store.get(job_id)
        if job is None or job.status in TERMINAL_STATUSES:
            return False
        # Conditional on the status just read, so a job that finished in
        # between keeps its terminal state
        cancelled = self.store.update(
            job_id,
            expect_status=job.status,
            status=JobStatus.CANCELLED,
            completed_at=datetime.now(),
        )
        if cancelled:
            logger.info("Cancelled job %s", job_id)
        return cancelled

    def clear_completed(self) -> int:
        """Delete done, error and cancelled jobs."""
        removed = self.store.clear()
        if removed:
            logger.info("Cleared %d completed job(s)", removed)
        return removed

    def get_worker_state(self) -> WorkerState:
        return self.context.get_worker_state()

    def stats(self) -> Dict[str, int]:
        """Job counts per status, plus a total."""
        counts = {status.value: 0 for status in JobStatus}
        for job in self.store.get_all():
            counts[job.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    def close(self) -> None:
        self.store.close()
