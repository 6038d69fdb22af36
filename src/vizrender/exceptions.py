"""Exception hierarchy for the render queue.

Every job-level failure is one of these (or an unexpected exception the
worker catches generically). The worker records ``str(exc)`` verbatim in the
job's ``error`` field, so messages are written for end users.
"""

from typing import List, Optional


class VizRenderError(Exception):
    """Base class for all render queue errors."""


class StagingError(VizRenderError):
    """Upload bytes could not be decoded, written or served.

    Covers bad base64 payloads, disk write failures, unsafe asset names and
    loopback port bind failures.
    """


class EngineError(VizRenderError):
    """External process (compositor or encoder) failed.

    Attributes:
        cmd: Command that was executed
        returncode: Process exit code (-1 when killed)
        output: Tail of the combined stdout/stderr output
    """

    def __init__(
        self,
        message: str,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.cmd = cmd or []
        self.returncode = returncode
        self.output = output


class StitchError(EngineError):
    """Frames and audio could not be muxed into the final container."""


class JobCancelled(VizRenderError):
    """Raised inside the worker when a job was cancelled mid-render."""
