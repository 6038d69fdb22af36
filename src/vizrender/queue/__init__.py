"""Durable render-job queue: storage, checkpoints and the worker."""

from .backends import JobStore
from .checkpoint import FrameCheckpoint, normalize_frame_names
from .models import JobStatus, JobView, QueueJob, TERMINAL_STATUSES, WorkerState
from .sqlite_backend import SQLiteJobStore

__all__ = [
    "JobStore",
    "FrameCheckpoint",
    "normalize_frame_names",
    "JobStatus",
    "JobView",
    "QueueJob",
    "TERMINAL_STATUSES",
    "WorkerState",
    "SQLiteJobStore",
]
