"""Pydantic models for configuration and render payloads."""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Configuration
# ============================================================================


class QueueConfig(BaseModel):
    """Durable queue storage locations and polling behavior."""

    root_dir: str = Field(default=".queue", description="Root directory for queue state")
    db_name: str = Field(default="jobs.db", description="SQLite database file name")
    frames_subdir: str = Field(
        default="frames", description="Per-job frame checkpoints, relative to root_dir"
    )
    staging_subdir: str = Field(
        default="staging", description="Per-job staged uploads, relative to root_dir"
    )
    logs_subdir: str = Field(
        default="logs", description="Failure artifacts from external processes"
    )
    poll_interval_s: float = Field(
        default=2.0, gt=0.0, description="Idle sleep between polls of an empty queue"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="How often a rendering job's heartbeat is refreshed"
    )
    stale_after_s: float = Field(
        default=300.0,
        gt=0.0,
        description="A rendering job without a heartbeat for this long is treated as abandoned",
    )

    @property
    def db_path(self) -> Path:
        return Path(self.root_dir) / self.db_name

    @property
    def frames_dir(self) -> Path:
        return Path(self.root_dir) / self.frames_subdir

    @property
    def staging_dir(self) -> Path:
        return Path(self.root_dir) / self.staging_subdir

    @property
    def logs_dir(self) -> Path:
        return Path(self.root_dir) / self.logs_subdir


class OutputConfig(BaseModel):
    """Where finished MP4 files are written and how they are addressed."""

    public_dir: str = Field(default="public", description="Directory served to clients")
    file_pattern: str = Field(
        default="render-{job_id}.mp4", description="Output file name, formatted with job_id"
    )
    url_prefix: str = Field(default="/outputs", description="URL prefix for public_dir")

    @field_validator("file_pattern")
    @classmethod
    def pattern_has_job_id(cls, v: str) -> str:
        if "{job_id}" not in v:
            raise ValueError("file_pattern must contain '{job_id}'")
        return v

    def file_name_for(self, job_id: str) -> str:
        return self.file_pattern.format(job_id=job_id)

    def url_for(self, file_name: str) -> str:
        return f"{self.url_prefix.rstrip('/')}/{file_name}"


class EngineConfig(BaseModel):
    """External compositor (Remotion CLI) invocation settings."""

    command: List[str] = Field(
        default_factory=lambda: ["npx", "remotion"], description="Compositor CLI prefix"
    )
    entry_point: str = Field(
        default="remotion/index.ts", description="Composition bundle entry point"
    )
    composition_id: str = Field(default="Visualizer", description="Composition to render")
    fps: int = Field(default=30, gt=0, description="Output frame rate")
    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    default_duration_frames: int = Field(
        default=300, gt=0, description="Duration used when tracks carry no duration"
    )
    concurrency: Optional[int] = Field(
        default=None, gt=0, description="Compositor concurrency (None = CPU count)"
    )
    gl: str = Field(default="angle", description="Chromium OpenGL backend")
    image_format: Literal["jpeg", "png"] = Field(default="jpeg", description="Frame format")
    audio_codec: Literal["mp3", "wav", "aac"] = Field(
        default="mp3", description="Codec for the standalone audio render"
    )
    timeout_s: Optional[int] = Field(
        default=None, gt=0, description="Optional global timeout per engine call"
    )


class EncoderConfig(BaseModel):
    """Hardware encoder detection settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="Explicit ffmpeg binary (None = bundled, then PATH)"
    )
    force_software: bool = Field(
        default=False, description="Skip the probe and always use libx264"
    )
    probe_timeout_s: int = Field(default=5, gt=0, description="Timeout for the probe command")


class StitchConfig(BaseModel):
    """FFmpeg stitching settings."""

    pixel_format: str = Field(default="yuv420p", description="Output pixel format")
    timeout_s: Optional[int] = Field(
        default=None, gt=0, description="Optional global timeout for ffmpeg"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and commands on failure"
    )


class ServerConfig(BaseModel):
    """HTTP API settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, gt=0, lt=65536)
    start_worker: bool = Field(
        default=True, description="Run the render worker inside the API process"
    )


class VizRenderConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    stitch: StitchConfig = Field(default_factory=StitchConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "VizRenderConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "VizRenderConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("queue_dir") is not None:
            config_dict["queue"]["root_dir"] = cli_args["queue_dir"]
        if cli_args.get("public_dir") is not None:
            config_dict["output"]["public_dir"] = cli_args["public_dir"]
        if cli_args.get("host") is not None:
            config_dict["server"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["server"]["port"] = cli_args["port"]
        if cli_args.get("ffmpeg") is not None:
            config_dict["encoder"]["ffmpeg_path"] = cli_args["ffmpeg"]
        if cli_args.get("force_software"):
            config_dict["encoder"]["force_software"] = True

        return VizRenderConfig.from_dict(config_dict)


# ============================================================================
# Render payload (as sent by the editor UI)
# ============================================================================


class VisualizerConfig(BaseModel):
    """Composition look: color, style, sensitivity and title placement."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    color: str = Field(default="#ffffff", description="Visualizer color (CSS)")
    type: Literal["bars", "wave"] = Field(default="wave", description="Visual style")
    sensitivity: float = Field(default=1.5, ge=0.0, description="Amplitude multiplier")
    position: float = Field(
        default=50.0, ge=0.0, le=100.0, description="Vertical position in percent"
    )
    visualizer_position: Optional[
        Literal["top", "center", "bottom", "lower-third", "custom"]
    ] = Field(default=None, alias="visualizerPosition")
    orientation: Literal["horizontal", "vertical"] = Field(default="horizontal")
    show_title: bool = Field(default=True, alias="showTitle")
    title_position: Literal[
        "top-left", "top-right", "center", "bottom-left", "bottom-right"
    ] = Field(default="center", alias="titlePosition")


class AudioTrack(BaseModel):
    """One track of the mix, played in list order."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    duration_in_frames: int = Field(default=0, ge=0, alias="durationInFrames")
    url: Optional[str] = Field(default=None, description="Replaced by the staged asset URL")


class BackgroundMedia(BaseModel):
    """Background image or video clip."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(..., min_length=1)
    type: Literal["image", "video"]
    name: str = Field(default="")
    duration_in_seconds: float = Field(default=0.0, ge=0.0, alias="durationInSeconds")
    trim_start: float = Field(default=0.0, ge=0.0, alias="trimStart")
    trim_end: float = Field(default=0.0, ge=0.0, alias="trimEnd")
    is_boomerang: bool = Field(default=False, alias="isBoomerang")
    url: Optional[str] = Field(default=None)


class RenderPayload(BaseModel):
    """Full render request stored with each job.

    Media bytes are base64 strings keyed by the descriptor id they belong to.
    """

    model_config = ConfigDict(populate_by_name=True)

    config: VisualizerConfig = Field(default_factory=VisualizerConfig)
    tracks: List[AudioTrack] = Field(default_factory=list)
    backgrounds: List[BackgroundMedia] = Field(default_factory=list)
    audio_files: Dict[str, str] = Field(default_factory=dict, alias="audioFiles")
    bg_file_buffers: Dict[str, str] = Field(default_factory=dict, alias="bgFileBuffers")

    def total_frames(self, default: int) -> int:
        """Timeline length: tracks play back to back."""
        total = sum(t.duration_in_frames for t in self.tracks)
        return total if total > 0 else default

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class CompositionSpec(BaseModel):
    """Everything the compositor needs to render one job."""

    composition_id: str
    fps: int = Field(gt=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    duration_in_frames: int = Field(gt=0)
    input_props: Dict[str, Any] = Field(default_factory=dict)

    @property
    def last_frame(self) -> int:
        return self.duration_in_frames - 1
