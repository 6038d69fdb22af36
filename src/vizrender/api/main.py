from __future__ import annotations

import asyncio
import base64
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles

from vizrender.config import resolve_config
from vizrender.models import RenderPayload, VizRenderConfig
from vizrender.queue import TERMINAL_STATUSES
from vizrender.queue.worker import RenderWorker
from vizrender.render_queue import RenderQueue

logger = logging.getLogger(__name__)

# Seconds between SSE polls of the job store
EVENT_POLL_INTERVAL_S = 0.5


def create_app(
    config: Optional[VizRenderConfig] = None,
    queue: Optional[RenderQueue] = None,
    worker: Optional[RenderWorker] = None,
    start_worker: Optional[bool] = None,
) -> FastAPI:
    """Build the render queue API.

    Args:
        config: Resolved config (default: resolve_config())
        queue: Queue facade (default: built from config)
        worker: Worker to run in-process (default: queue.create_worker())
        start_worker: Start the worker with the app (default: server.start_worker)
    """
    config = config or (queue.config if queue else resolve_config())
    owns_queue = queue is None
    queue = queue or RenderQueue(config)
    if start_worker is None:
        start_worker = config.server.start_worker
    if start_worker and worker is None:
        worker = queue.create_worker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_worker:
            worker.start()
        yield
        if start_worker:
            await asyncio.to_thread(worker.stop)
        if owns_queue:
            queue.close()

    app = FastAPI(title="vizrender", lifespan=lifespan)
    app.state.queue = queue
    app.state.worker = worker

    public_dir = Path(config.output.public_dir)
    public_dir.mkdir(parents=True, exist_ok=True)
    app.mount(config.output.url_prefix, StaticFiles(directory=str(public_dir)), name="outputs")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post("/api/queue/add")
    async def add_job(
        label: str = Form("Untitled Mix"),
        config_json: str = Form(..., alias="config"),
        tracks: str = Form(...),
        backgrounds: str = Form("[]"),
        files: Optional[List[UploadFile]] = File(None),
        bg_files: Optional[List[UploadFile]] = File(None, alias="bgFiles"),
    ):
        """Enqueue a render. Uploaded file names are the descriptor ids."""
        audio_uploads = await _read_uploads(files)
        bg_uploads = await _read_uploads(bg_files)

        # Encoding, validation and the fsync-ed insert run off the event loop
        try:
            payload = await asyncio.to_thread(
                _build_payload, config_json, tracks, backgrounds, audio_uploads, bg_uploads
            )
        except ValueError as e:
            # Covers json.JSONDecodeError and pydantic.ValidationError
            raise HTTPException(status_code=400, detail=f"Invalid render request: {e}")

        job_id = await asyncio.to_thread(queue.enqueue, label or "Untitled Mix", payload)
        return {"jobId": job_id}

    @app.get("/api/queue/list")
    def list_jobs():
        """All jobs (newest first) without payloads, plus worker state."""
        return {
            "jobs": [job.model_dump(mode="json", by_alias=True) for job in queue.list_jobs()],
            "worker": queue.get_worker_state().model_dump(by_alias=True),
        }

    @app.delete("/api/queue/list")
    def clear_jobs():
        """Delete done, error and cancelled jobs."""
        removed = queue.clear_completed()
        return {"ok": True, "removed": removed}

    @app.get("/api/queue/status")
    def job_status(id: Optional[str] = Query(None)):
        if not id:
            raise HTTPException(status_code=400, detail="No id")
        view = queue.get_job(id)
        if view is None:
            raise HTTPException(status_code=404, detail="Not found")
        return view.model_dump(mode="json", by_alias=True)

    @app.delete("/api/queue/status")
    def cancel_job(id: Optional[str] = Query(None)):
        if not id:
            raise HTTPException(status_code=400, detail="No id")
        cancelled = queue.cancel_job(id)
        return {"ok": True, "cancelled": cancelled}

    async def event_generator(job_id: str, request: Request) -> AsyncGenerator[str, None]:
        """SSE generator that yields job updates until a terminal status."""
        last_progress = None
        last_status = None

        while True:
            if await request.is_disconnected():
                break

            view = queue.get_job(job_id)
            if view is None:
                yield 'event: error\ndata: {"error": "Not found"}\n\n'
                break

            if view.progress != last_progress or view.status != last_status:
                yield f"data: {view.model_dump_json(by_alias=True)}\n\n"
                last_progress = view.progress
                last_status = view.status

            if view.status in TERMINAL_STATUSES:
                break

            await asyncio.sleep(EVENT_POLL_INTERVAL_S)

    @app.get("/api/queue/events")
    async def job_events(request: Request, id: Optional[str] = Query(None)):
        if not id:
            raise HTTPException(status_code=400, detail="No id")
        return StreamingResponse(event_generator(id, request), media_type="text/event-stream")

    return app


async def _read_uploads(files: Optional[List[UploadFile]]) -> Dict[str, bytes]:
    """Read uploads keyed by file name."""
    uploads = {}
    for upload in files or []:
        if not upload.filename:
            continue
        uploads[upload.filename] = await upload.read()
    return uploads


def _encode(uploads: Dict[str, bytes]) -> Dict[str, str]:
    return {name: base64.b64encode(data).decode("ascii") for name, data in uploads.items()}


def _build_payload(
    config_json: str,
    tracks: str,
    backgrounds: str,
    audio_uploads: Dict[str, bytes],
    bg_uploads: Dict[str, bytes],
) -> RenderPayload:
    return RenderPayload.model_validate({
        "config": json.loads(config_json),
        "tracks": json.loads(tracks),
        "backgrounds": json.loads(backgrounds or "[]"),
        "audioFiles": _encode(audio_uploads),
        "bgFileBuffers": _encode(bg_uploads),
    })
