"""External process runner with progress monitoring and process-tree cleanup.

Both external tools this package drives (the frame compositor and ffmpeg) are
long-running, chatty processes. This module runs them with:

- Process isolation with subprocess.Popen (own session on POSIX)
- Line-by-line output monitoring on a background thread
- Progress parsing hooks for subclasses, with a throttled callback
- Cooperative cancellation and an optional global timeout
- Process tree cleanup via psutil
- Artifact preservation on failure (log + reproducible shell script)
"""

import logging
import os
import shlex
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, List, Optional

import psutil

logger = logging.getLogger(__name__)


@dataclass
class ProcessProgress:
    """Real-time progress metrics parsed from process output."""
    fraction: float = 0.0        # 0..1 within the current invocation
    frame: int = 0               # Frames done in this invocation
    total_frames: int = 0        # Frames expected in this invocation
    fps: float = 0.0
    speed: float = 0.0
    last_update: float = 0.0     # Timestamp of last parsed update


@dataclass
class ProcessResult:
    """Result of an external process execution."""
    success: bool
    returncode: int
    output: str
    duration_s: float
    cancelled: bool = False
    timed_out: bool = False
    final_progress: Optional[ProcessProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


class ProcessRunner:
    """Runs one external command at a time and reports its progress.

    Subclasses override ``_parse_line`` to turn tool-specific output into
    ``ProcessProgress`` updates.

    Example:
        >>> runner = ProcessRunner(progress_callback=lambda p: print(p.fraction))
        >>> result = runner.run(["some-tool", "--flag"])
        >>> if not result.success:
        ...     print(result.output)
    """

    name = "process"

    def __init__(
        self,
        timeout_s: Optional[float] = None,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        artifacts_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[ProcessProgress], None]] = None,
        progress_interval_s: float = 0.5,
        output_tail_lines: int = 200,
    ):
        """Initialize runner.

        Args:
            timeout_s: Global timeout per run (None = wait indefinitely)
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            artifacts_dir: Where failure artifacts go (None = system temp)
            progress_callback: Called with progress updates (throttled)
            progress_interval_s: Minimum seconds between callback invocations
            output_tail_lines: Number of trailing output lines kept
        """
        self.timeout_s = timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.artifacts_dir = artifacts_dir
        self.progress_callback = progress_callback
        self.progress_interval_s = progress_interval_s
        self.output_tail_lines = output_tail_lines

        self._progress = ProcessProgress()
        self._cancel = threading.Event()
        self._last_callback = 0.0

    def cancel(self) -> None:
        """Ask the running process to stop. Safe to call from any thread."""
        self._cancel.set()

    def run(self, cmd: List[str], total_frames: int = 0, cwd: Optional[str] = None) -> ProcessResult:
        """Execute a command, blocking until it exits, is cancelled or times out.

        Args:
            cmd: Command as list
            total_frames: Expected frame count for progress calculation
            cwd: Working directory for the process

        Returns:
            ProcessResult with execution details. A command that cannot be
            started at all yields a failed result with returncode -1.
        """
        start_time = time.time()
        self._progress = ProcessProgress(total_frames=total_frames)
        self._cancel.clear()
        self._last_callback = 0.0
        tail: Deque[str] = deque(maxlen=self.output_tail_lines)

        logger.debug("Starting %s: %s", self.name, " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                cwd=cwd,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            message = f"Failed to start {self.name} ({cmd[0]}): {e}"
            return ProcessResult(
                success=False,
                returncode=-1,
                output=message,
                duration_s=time.time() - start_time,
                final_progress=self._progress,
            )

        monitor = threading.Thread(
            target=self._monitor_output, args=(process.stdout, tail), daemon=True
        )
        monitor.start()

        cancelled = False
        timed_out = False
        deadline = start_time + self.timeout_s if self.timeout_s else None

        try:
            while True:
                try:
                    returncode = process.wait(timeout=0.25)
                    break
                except subprocess.TimeoutExpired:
                    if self._cancel.is_set():
                        cancelled = True
                    elif deadline is not None and time.time() > deadline:
                        timed_out = True
                    else:
                        continue
                    logger.warning(
                        "Stopping %s (pid %s): %s",
                        self.name, process.pid, "cancelled" if cancelled else "timeout",
                    )
                    self._kill_process_tree(process)
                    returncode = process.wait()
                    break
        except BaseException:
            # Interrupted while waiting (e.g. KeyboardInterrupt); never leave orphans
            self._kill_process_tree(process)
            raise
        finally:
            monitor.join(timeout=2)

        output = "\n".join(tail)
        success = returncode == 0 and not cancelled and not timed_out

        artifacts: List[Path] = []
        if not success and not cancelled and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, output)

        return ProcessResult(
            success=success,
            returncode=returncode if not (cancelled or timed_out) else -1,
            output=output,
            duration_s=time.time() - start_time,
            cancelled=cancelled,
            timed_out=timed_out,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _parse_line(self, line: str) -> bool:
        """Update ``self._progress`` from one output line.

        Returns:
            True if the line carried a progress update
        """
        return False

    def _monitor_output(self, stream, tail: Deque[str]) -> None:
        """Read process output line by line, parse progress, invoke callback."""
        try:
            for line in stream:
                tail.append(line.rstrip("\n"))
                if not self._parse_line(line):
                    continue

                self._progress.last_update = time.time()
                now = time.time()
                if self.progress_callback and now - self._last_callback >= self.progress_interval_s:
                    self._last_callback = now
                    try:
                        self.progress_callback(self._progress)
                    except Exception as e:
                        # A failing observer must not kill the render
                        logger.error("Progress callback error: %s", e)
        except (OSError, ValueError) as e:
            # Stream closed underneath us after a kill
            logger.debug("Output monitoring stopped: %s", e)

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill the process and all its children.

        Kill sequence:
        1. SIGTERM to every process in the tree
        2. Wait grace period
        3. SIGKILL survivors
        """
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        try:
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(children + [parent], timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def _save_failure_artifacts(self, cmd: List[str], output: str) -> List[Path]:
        """Save debugging artifacts on failure.

        Creates:
        - <name>_error_{timestamp}.log: Command + output tail
        - <name>_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        artifacts_dir = self._get_artifacts_dir()
        timestamp = int(time.time())

        log_path = artifacts_dir / f"{self.name}_error_{timestamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write(f"{self.name} Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("OUTPUT:\n")
                f.write(output or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = artifacts_dir / f"{self.name}_cmd_{timestamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write(f"# Reproducible {self.name} command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")

                escaped_cmd = [shlex.quote(str(arg)) for arg in cmd]
                f.write(" \\\n  ".join(escaped_cmd) + "\n")

            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        if artifacts:
            logger.info("Saved %s failure artifacts: %s", self.name, [str(a) for a in artifacts])
        return artifacts

    def _get_artifacts_dir(self) -> Path:
        if self.artifacts_dir:
            artifacts_dir = Path(self.artifacts_dir)
        else:
            artifacts_dir = Path(tempfile.gettempdir())

        artifacts_dir.mkdir(parents=True, exist_ok=True)
        return artifacts_dir
