"""Pydantic models for render queue data structures."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    """Render job states.

    State transitions:
        pending → rendering     (worker picks the job up)
        rendering → done        (frames, audio and stitch all succeeded)
        rendering → error       (any step raised)
        pending → cancelled     (user cancel)
        rendering → cancelled   (user cancel, observed by the worker)

    done, error and cancelled are terminal.
    """

    PENDING = "pending"
    RENDERING = "rendering"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELLED})


class QueueJob(BaseModel):
    """One stored render job, including its payload."""

    id: str = Field(..., description="Opaque unique job id (uuid4 hex)")
    label: str = Field(..., description="Display name")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    progress: float = Field(default=0.0, ge=0.0, le=1.0, description="Fraction rendered")
    created_at: datetime = Field(default_factory=datetime.now, description="Enqueue time")
    started_at: Optional[datetime] = Field(default=None, description="First pickup time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal time")
    payload: str = Field(default="", description="JSON-serialized RenderPayload")
    output_url: Optional[str] = Field(default=None, description="Set on success")
    output_file_name: Optional[str] = Field(default=None, description="Set on success")
    error: Optional[str] = Field(default=None, description="Set on error")
    encoder_used: Optional[str] = Field(default=None, description="Encoder chosen for stitch")
    last_heartbeat: Optional[datetime] = Field(
        default=None, description="Last sign of life from the worker rendering this job"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobView(BaseModel):
    """A job as shown to observers: no payload, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    label: str
    status: JobStatus
    progress: float
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output_url: Optional[str] = None
    output_file_name: Optional[str] = None
    error: Optional[str] = None
    encoder_used: Optional[str] = None

    @classmethod
    def from_job(cls, job: QueueJob) -> "JobView":
        return cls(**job.model_dump(exclude={"payload", "last_heartbeat"}))


class WorkerState(BaseModel):
    """Snapshot of the render worker."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    running: bool = False
    active_job_id: Optional[str] = None
    encoder: Optional[str] = None
