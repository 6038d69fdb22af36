import argparse
import base64
import json
import logging
import sys
import time
from pathlib import Path

from pydantic import ValidationError
from tqdm import tqdm

from . import config as config_lib
from . import renderer
from .encoders import EncoderProber
from .queue import TERMINAL_STATUSES
from .render_queue import RenderQueue

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: str = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, handlers=handlers)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vizrender", description="Resumable render queue for audio visualizer videos"
    )
    parser.add_argument("--config", type=str, help="Extra YAML config file")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("--log-file", type=str, help="Also write logs to this file")
    parser.add_argument("--queue-dir", type=str, help="Override queue.root_dir")
    parser.add_argument("--public-dir", type=str, help="Override output.public_dir")
    parser.add_argument("--ffmpeg", type=str, help="Path to ffmpeg binary")
    parser.add_argument(
        "--force-software", action="store_true", help="Always encode with libx264"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API (and worker)")
    serve_parser.add_argument("--host", type=str, help="Bind host")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument(
        "--no-worker", action="store_true", help="Do not run the render worker in-process"
    )

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the render worker in the foreground")
    worker_parser.add_argument(
        "--once", action="store_true", help="Process interrupted jobs and one pending job, then exit"
    )

    # CHECK
    subparsers.add_parser("check", help="Verify ffmpeg and detect the video encoder")

    # QUEUE
    queue_parser = subparsers.add_parser("queue", help="Manage render jobs")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("list", help="List jobs, newest first")

    status_parser = queue_subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id", help="Job id")

    add_parser = queue_subparsers.add_parser("add", help="Enqueue a render from a payload file")
    add_parser.add_argument("payload", help="JSON file with config, tracks and backgrounds")
    add_parser.add_argument("--label", "-l", type=str, default="Untitled Mix", help="Job label")
    add_parser.add_argument(
        "--audio", action="append", default=[], help="Audio file; its name is the track id"
    )
    add_parser.add_argument(
        "--background", action="append", default=[], help="Background file; its name is the id"
    )

    cancel_parser = queue_subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job id")

    queue_subparsers.add_parser("clear", help="Delete done, error and cancelled jobs")

    watch_parser = queue_subparsers.add_parser("watch", help="Follow a job's progress")
    watch_parser.add_argument("job_id", help="Job id")
    watch_parser.add_argument("--interval", type=float, default=1.0, help="Poll interval (s)")

    return parser


def _load_payload(args) -> dict:
    with open(args.payload, "r", encoding="utf-8") as f:
        payload = json.load(f)

    audio_files = payload.setdefault("audioFiles", {})
    for path in args.audio:
        audio_files[Path(path).name] = base64.b64encode(Path(path).read_bytes()).decode("ascii")

    bg_files = payload.setdefault("bgFileBuffers", {})
    for path in args.background:
        bg_files[Path(path).name] = base64.b64encode(Path(path).read_bytes()).decode("ascii")

    return payload


def _print_job(view) -> None:
    line = f"{view.id}  {view.status.value:<10} {view.progress * 100:5.1f}%  {view.label}"
    if view.output_url:
        line += f"  -> {view.output_url}"
    if view.error:
        line += f"  ! {view.error}"
    print(line)


def _watch(queue: RenderQueue, job_id: str, interval: float) -> int:
    view = queue.get_job(job_id)
    if view is None:
        print(f"Job not found: {job_id}")
        return 1

    with tqdm(total=100, desc=view.label, unit="%") as bar:
        while True:
            view = queue.get_job(job_id)
            if view is None:
                print(f"Job {job_id} was removed")
                return 1
            target = int(view.progress * 100)
            if target > bar.n:
                bar.update(target - bar.n)
            bar.set_postfix(status=view.status.value)
            if view.status in TERMINAL_STATUSES:
                break
            time.sleep(interval)

    _print_job(view)
    return 0 if view.status.value == "done" else 1


def run_queue_command(args, queue: RenderQueue) -> int:
    if args.queue_command == "list":
        jobs = queue.list_jobs()
        for view in jobs:
            _print_job(view)
        stats = queue.stats()
        print("=" * 60)
        print(
            f"Pending: {stats['pending']}  Rendering: {stats['rendering']}  "
            f"Done: {stats['done']}  Error: {stats['error']}  "
            f"Cancelled: {stats['cancelled']}  Total: {stats['total']}"
        )
        return 0

    if args.queue_command == "status":
        view = queue.get_job(args.job_id)
        if view is None:
            print(f"Job not found: {args.job_id}")
            return 1
        print(json.dumps(view.model_dump(mode="json", by_alias=True), indent=2))
        return 0

    if args.queue_command == "add":
        try:
            job_id = queue.enqueue(args.label, _load_payload(args))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            print(f"Cannot enqueue: {e}")
            return 1
        print(job_id)
        return 0

    if args.queue_command == "cancel":
        if queue.cancel_job(args.job_id):
            print(f"Cancelled {args.job_id}")
        else:
            print(f"Nothing to cancel for {args.job_id}")
        return 0

    if args.queue_command == "clear":
        removed = queue.clear_completed()
        print(f"Removed {removed} job(s)")
        return 0

    if args.queue_command == "watch":
        return _watch(queue, args.job_id, args.interval)

    print("Usage: vizrender queue {list,status,add,cancel,clear,watch}")
    return 1


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = config_lib.resolve_config(cli_dict, config_path=args.config)
    except (FileNotFoundError, ValidationError) as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)

    if args.command == "check":
        print("Checking dependencies...")
        ffmpeg = renderer.check_ffmpeg(config.encoder.ffmpeg_path)
        if not ffmpeg:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        print(f"✅ ffmpeg found: {ffmpeg}")
        prober = EncoderProber(
            ffmpeg_path=ffmpeg,
            force_software=config.encoder.force_software,
            timeout_s=config.encoder.probe_timeout_s,
        )
        print(f"✅ video encoder: {prober.detect().value}")
        sys.exit(0)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        start_worker = config.server.start_worker and not args.no_worker
        app = create_app(config, start_worker=start_worker)
        uvicorn.run(app, host=config.server.host, port=config.server.port)
        sys.exit(0)

    queue = RenderQueue(config)
    try:
        if args.command == "worker":
            worker = queue.create_worker()
            if args.once:
                worker.recover_interrupted()
                worker.run_once()
            else:
                try:
                    worker.run_forever()
                except KeyboardInterrupt:
                    logger.info("Interrupted; in-flight job will resume on next start")
            sys.exit(0)

        if args.command == "queue":
            sys.exit(run_queue_command(args, queue))
    finally:
        queue.close()


if __name__ == "__main__":
    main()
