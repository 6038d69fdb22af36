"""Abstract job store interface.

The worker, the queue facade and the HTTP API only talk to this interface,
so the storage engine can change without touching the render pipeline.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from .models import JobStatus, QueueJob


class JobStore(ABC):
    """Durable store of render jobs.

    Implementations must provide:
    - Commit every mutation before returning (survives a process kill)
    - Consistent snapshots per call under concurrent worker/API access
    - FIFO next_pending() by creation time
    - Monotonic progress while a job is rendering
    """

    @abstractmethod
    def add(self, job_id: str, label: str, payload: str) -> "QueueJob":
        """Insert a new pending job with progress 0.

        Args:
            job_id: Unique job identifier
            label: Display name
            payload: JSON-serialized render payload (written once)
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional["QueueJob"]:
        """Return the job, or None if unknown."""
        pass

    @abstractmethod
    def get_all(self) -> List["QueueJob"]:
        """All jobs, newest first."""
        pass

    @abstractmethod
    def next_pending(self) -> Optional["QueueJob"]:
        """Oldest pending job by created_at, ties broken by insertion order."""
        pass

    @abstractmethod
    def update(
        self, job_id: str, expect_status: Optional["JobStatus"] = None, **fields: Any
    ) -> bool:
        """Merge fields into a job.

        Args:
            job_id: Job identifier (unknown ids are a no-op)
            expect_status: Only apply if the job currently has this status
            **fields: Column values; ``started_at`` never overwrites an
                existing value

        Returns:
            True if a row was changed
        """
        pass

    @abstractmethod
    def set_progress(self, job_id: str, progress: float) -> bool:
        """Raise progress while the job is rendering.

        Lower values are ignored. Returns False once the job is no longer
        rendering, which is how the worker observes cancellation.
        """
        pass

    @abstractmethod
    def cancel(self, job_id: str) -> None:
        """Set status cancelled regardless of the current status."""
        pass

    @abstractmethod
    def delete(self, job_id: str) -> None:
        pass

    @abstractmethod
    def clear(self) -> int:
        """Delete all done, error and cancelled jobs.

        Returns:
            Number of deleted jobs
        """
        pass

    @abstractmethod
    def heartbeat(self, job_id: str) -> bool:
        """Record that a worker is still rendering this job.

        Returns:
            False if the job is no longer rendering
        """
        pass

    @abstractmethod
    def interrupted(self, stale_after_s: float) -> List["QueueJob"]:
        """Rendering jobs whose heartbeat is older than ``stale_after_s``.

        These were left behind by a worker that died. Oldest first.
        """
        pass

    @abstractmethod
    def claim_interrupted(self, job_id: str, stale_after_s: float) -> bool:
        """Atomically take over a stale rendering job.

        Returns:
            False if the job is not rendering or its heartbeat is fresh
        """
        pass

    def close(self) -> None:
        """Release storage resources."""
