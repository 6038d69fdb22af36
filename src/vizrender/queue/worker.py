"""Single-flight render worker.

One background thread polls the job store and runs each job through:

1. Claim (pending → rendering), record encoder
2. Decode payload and stage uploaded media on a loopback server
3. Resume check against the frame checkpoint
4. Render remaining frames
5. Render audio
6. Stitch
7. Mark done and drop the frame checkpoint
8. On failure mark error and keep the frames
9. Always close the asset server and remove staged files

Cancellation is cooperative: the job row is re-read at every step boundary,
and a progress write that finds the job no longer rendering stops the
external process that is running.
"""

import logging
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from ..assets import AssetStager, decode_media
from ..encoders import EncoderId, EncoderProber
from ..engine import RemotionEngine, RenderEngine, build_composition_spec
from ..exceptions import JobCancelled
from ..models import RenderPayload, VizRenderConfig
from ..renderer import Stitcher
from .backends import JobStore
from .checkpoint import FrameCheckpoint
from .models import JobStatus, QueueJob, WorkerState

logger = logging.getLogger(__name__)


class WorkerContext:
    """State shared between the worker thread and its observers.

    Holds the store, the encoder prober and the live worker flags, so the
    API and CLI read worker state without module-level globals.
    """

    def __init__(self, config: VizRenderConfig, store: JobStore, prober: EncoderProber):
        self.config = config
        self.store = store
        self.prober = prober
        self.running = False
        self.active_job_id: Optional[str] = None

    def get_worker_state(self) -> WorkerState:
        """Snapshot of the worker; probes the encoder on first call."""
        return WorkerState(
            running=self.running,
            active_job_id=self.active_job_id,
            encoder=self.prober.detect().value,
        )


class RenderWorker:
    """Processes render jobs one at a time.

    Args:
        context: Shared worker context
        engine: Compositor driver (default: Remotion CLI)
        stitcher: Frame/audio muxer (default: ffmpeg)
    """

    def __init__(
        self,
        context: WorkerContext,
        engine: Optional[RenderEngine] = None,
        stitcher: Optional[Stitcher] = None,
    ):
        self.context = context
        config = context.config
        artifacts_dir = str(config.queue.logs_dir)
        self.engine = engine or RemotionEngine(config.engine, artifacts_dir=artifacts_dir)
        self.stitcher = stitcher or Stitcher(
            ffmpeg_path=config.encoder.ffmpeg_path,
            config=config.stitch,
            artifacts_dir=artifacts_dir,
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def store(self) -> JobStore:
        return self.context.store

    @property
    def config(self) -> VizRenderConfig:
        return self.context.config

    def start(self) -> None:
        """Run the loop on a daemon thread. No-op if already started."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="render-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop and any running external process.

        A job interrupted this way stays in rendering with its frames on
        disk and is resumed when a worker starts again.
        """
        self._stop.set()
        self.engine.cancel()
        self.stitcher.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Render worker did not stop within %ss", timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Poll until stop() is called."""
        self.context.running = True
        logger.info("Render worker started")
        try:
            while not self._stop.is_set():
                # Jobs abandoned by another process can go stale at any time
                if not (self.recover_interrupted() or self.run_once()):
                    self._stop.wait(self.config.queue.poll_interval_s)
        finally:
            self.context.running = False
            logger.info("Render worker stopped")

    def recover_interrupted(self) -> int:
        """Resume jobs left in rendering by a process that died.

        A job still heartbeating belongs to a live worker and is skipped.

        Returns:
            Number of stale jobs found
        """
        jobs = self.store.interrupted(self.config.queue.stale_after_s)
        for job in jobs:
            if self._stop.is_set():
                break
            logger.info("Resuming interrupted job %s (%s)", job.id, job.label)
            self.process_job(job)
        return len(jobs)

    def run_once(self) -> bool:
        """Process the oldest pending job, if any.

        Returns:
            True if a job was processed
        """
        job = self.store.next_pending()
        if job is None:
            return False
        self.process_job(job)
        return True

    def process_job(self, job: QueueJob) -> None:
        """Run one job to a terminal state. Never raises."""
        checkpoint = FrameCheckpoint(
            self.config.queue.frames_dir, job.id, self.config.engine.image_format
        )
        staging_dir = self.config.queue.staging_dir / job.id
        heartbeat = None
        self.context.active_job_id = job.id

        try:
            encoder = self.context.prober.detect()
            if not self._claim(job, encoder):
                logger.info("Job %s is claimed by another worker, skipping", job.id)
                return
            heartbeat = self._start_heartbeat(job.id)

            logger.info("Rendering job %s (%s) with %s", job.id, job.label, encoder.value)
            output_path = self._render(job, checkpoint, staging_dir, encoder)
            self._finish(job, checkpoint, output_path)

        except JobCancelled as e:
            current = self.store.get(job.id)
            if self._stop.is_set() and current is not None and current.status == JobStatus.RENDERING:
                logger.info("Worker stopping; job %s left for resume", job.id)
            else:
                logger.info("Job %s cancelled (%s)", job.id, e)

        except Exception as e:
            logger.exception("Job %s failed", job.id)
            self.store.update(
                job.id,
                expect_status=JobStatus.RENDERING,
                status=JobStatus.ERROR,
                error=str(e) or e.__class__.__name__,
                completed_at=datetime.now(),
            )

        finally:
            if heartbeat is not None:
                self._stop_heartbeat(heartbeat)
                # Hand a job left in rendering straight to the next worker
                self.store.update(job.id, expect_status=JobStatus.RENDERING, last_heartbeat=None)
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)
            self.context.active_job_id = None

    def _claim(self, job: QueueJob, encoder: EncoderId) -> bool:
        now = datetime.now()
        if job.status == JobStatus.RENDERING:
            # Interrupted job: keep status, started_at is written once
            if not self.store.claim_interrupted(job.id, self.config.queue.stale_after_s):
                return False
            return self.store.update(
                job.id,
                expect_status=JobStatus.RENDERING,
                started_at=now,
                encoder_used=encoder.value,
            )
        return self.store.update(
            job.id,
            expect_status=JobStatus.PENDING,
            status=JobStatus.RENDERING,
            started_at=now,
            encoder_used=encoder.value,
            last_heartbeat=now,
        )

    def _start_heartbeat(self, job_id: str) -> Tuple[threading.Thread, threading.Event]:
        """Refresh the job's heartbeat every ``queue.heartbeat_interval_s``."""
        stop_event = threading.Event()
        interval = self.config.queue.heartbeat_interval_s

        def heartbeat_loop():
            while not stop_event.wait(interval):
                try:
                    self.store.heartbeat(job_id)
                except Exception as e:
                    logger.warning("Heartbeat failed for %s: %s", job_id, e)

        thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
        thread.start()
        return thread, stop_event

    @staticmethod
    def _stop_heartbeat(heartbeat: Tuple[threading.Thread, threading.Event]) -> None:
        thread, stop_event = heartbeat
        stop_event.set()
        thread.join(timeout=5)

    def _render(
        self,
        job: QueueJob,
        checkpoint: FrameCheckpoint,
        staging_dir: Path,
        encoder: EncoderId,
    ) -> Path:
        payload = RenderPayload.model_validate_json(job.payload)

        with AssetStager(staging_dir) as stager:
            audio_names = stager.stage(decode_media(payload.audio_files), prefix="audio")
            bg_names = stager.stage(decode_media(payload.bg_file_buffers), prefix="bg")
            stager.start()
            audio_urls = {key: stager.url_for(name) for key, name in audio_names.items()}
            bg_urls = {key: stager.url_for(name) for key, name in bg_names.items()}

            spec = build_composition_spec(payload, self.config.engine, audio_urls, bg_urls)
            total = spec.duration_in_frames
            end = spec.last_frame

            self._check_cancelled(job.id)
            checkpoint.ensure()
            checkpoint.normalize()
            start = checkpoint.resume_point()
            if start > 0:
                logger.info("Job %s: resuming at frame %d of %d", job.id, start, total)
                self._report_progress(job.id, min(start, total) / total)

            if start <= end:
                range_len = end - start + 1
                logger.info("Job %s: rendering frames %d-%d", job.id, start, end)

                def on_progress(local: float):
                    self._report_progress(job.id, (start + local * range_len) / total)

                self.engine.render_frames(spec, (start, end), checkpoint.directory, on_progress)

            self._check_cancelled(job.id)
            audio_path = self.engine.render_audio(spec, staging_dir)

        self._check_cancelled(job.id)
        output_path = Path(self.config.output.public_dir) / self.config.output.file_name_for(job.id)
        self.stitcher.stitch(checkpoint, audio_path, (0, end), spec.fps, encoder, output_path)
        return output_path

    def _finish(self, job: QueueJob, checkpoint: FrameCheckpoint, output_path: Path) -> None:
        file_name = output_path.name
        done = self.store.update(
            job.id,
            expect_status=JobStatus.RENDERING,
            status=JobStatus.DONE,
            progress=1.0,
            output_url=self.config.output.url_for(file_name),
            output_file_name=file_name,
            completed_at=datetime.now(),
        )
        if not done:
            logger.info("Job %s was cancelled during stitching; discarding %s", job.id, file_name)
            output_path.unlink(missing_ok=True)
            return

        checkpoint.remove()
        logger.info("Job %s done: %s", job.id, output_path)

    def _report_progress(self, job_id: str, value: float) -> None:
        if not self.store.set_progress(job_id, value):
            logger.info("Job %s is no longer rendering; stopping engine", job_id)
            self.engine.cancel()

    def _check_cancelled(self, job_id: str) -> None:
        if self._stop.is_set():
            raise JobCancelled("Worker stopping")
        job = self.store.get(job_id)
        if job is None or job.status != JobStatus.RENDERING:
            raise JobCancelled(f"Job {job_id} was cancelled")
