"""Loopback asset server for the sandboxed compositor.

The compositor runs in a headless browser that may not read local files, so
uploaded media is written to a job-scoped directory and served over HTTP on
127.0.0.1 with an ephemeral port.
"""

import base64
import binascii
import logging
import os
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import unquote, urlsplit

from .exceptions import StagingError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_name(name: str) -> str:
    """Map an arbitrary logical name to a safe file name.

    Characters other than ASCII letters, digits, ``.`` and ``-`` become ``_``.

    Raises:
        StagingError: If the result is empty or a relative path component
    """
    safe = _UNSAFE_CHARS.sub("_", name)
    if not safe or safe in (".", ".."):
        raise StagingError(f"Unsafe asset name: {name!r}")
    return safe


def decode_media(encoded: Dict[str, str]) -> Dict[str, bytes]:
    """Decode base64 upload payloads keyed by descriptor id."""
    decoded = {}
    for key, value in encoded.items():
        try:
            decoded[key] = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise StagingError(f"Invalid base64 data for asset {key!r}: {e}") from e
    return decoded


class _AssetHandler(BaseHTTPRequestHandler):
    """Serves files from the server's root by basename only."""

    server: "_AssetHTTPServer"

    def do_GET(self):
        self._serve(send_body=True)

    def do_HEAD(self):
        self._serve(send_body=False)

    def _serve(self, send_body: bool):
        requested = unquote(urlsplit(self.path).path)
        # Basename before join: "/../../etc/passwd" resolves to "passwd"
        name = os.path.basename(requested)
        file_path = self.server.root / name

        if not name or not file_path.is_file():
            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", "9")
            self.end_headers()
            if send_body:
                self.wfile.write(b"Not Found")
            return

        try:
            data = file_path.read_bytes()
        except OSError:
            self.send_error(404)
            return

        self.send_response(200)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        if send_body:
            self.wfile.write(data)

    def log_message(self, format, *args):
        logger.debug("asset server: " + format, *args)


class _AssetHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, root: Path):
        self.root = root
        super().__init__(address, _AssetHandler)


class AssetStager:
    """Stage job uploads to disk and serve them on a loopback port.

    Usage:
        with AssetStager(staging_dir) as stager:
            names = stager.stage(audio_bytes, prefix="audio")
            base_url = stager.start()
            url = stager.url_for(names["track-1"])

    The listener is closed on context exit whatever happened inside.
    """

    def __init__(self, staging_dir: Path, host: str = "127.0.0.1"):
        self.staging_dir = Path(staging_dir)
        self.host = host
        self._server: Optional[_AssetHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self.base_url: Optional[str] = None
        # Staged file name -> descriptor id that claimed it
        self._owners: Dict[str, str] = {}

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def stage(self, files: Dict[str, bytes], prefix: str) -> Dict[str, str]:
        """Write payloads to the staging directory.

        Args:
            files: Logical name (descriptor id) -> raw bytes
            prefix: File name prefix, e.g. "audio" or "bg"

        Returns:
            Logical name -> staged file name

        Raises:
            StagingError: On unsafe names, two ids staging to the same
                file name, or write failures
        """
        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StagingError(f"Cannot create staging directory {self.staging_dir}: {e}") from e

        staged = {}
        for logical_name, data in files.items():
            file_name = f"{sanitize_name(prefix)}-{sanitize_name(logical_name)}.data"
            owner = self._owners.get(file_name)
            if owner is not None and owner != logical_name:
                raise StagingError(
                    f"Asset ids {owner!r} and {logical_name!r} both stage to {file_name}"
                )
            self._owners[file_name] = logical_name
            try:
                (self.staging_dir / file_name).write_bytes(data)
            except OSError as e:
                raise StagingError(f"Failed to stage asset {logical_name!r}: {e}") from e
            staged[logical_name] = file_name

        logger.debug("Staged %d %s asset(s) in %s", len(staged), prefix, self.staging_dir)
        return staged

    def start(self) -> str:
        """Start the loopback listener on an ephemeral port.

        Returns:
            Base URL, e.g. ``http://127.0.0.1:54321``

        Raises:
            StagingError: If no port could be bound
        """
        if self._server is not None:
            return self.base_url

        try:
            self._server = _AssetHTTPServer((self.host, 0), self.staging_dir)
        except OSError as e:
            raise StagingError(f"Could not bind asset server on {self.host}: {e}") from e

        port = self._server.server_address[1]
        self.base_url = f"http://{self.host}:{port}"

        self._thread = threading.Thread(
            target=self._server.serve_forever, name=f"asset-server-{port}", daemon=True
        )
        self._thread.start()
        logger.info("Asset server listening on %s serving %s", self.base_url, self.staging_dir)
        return self.base_url

    def url_for(self, file_name: str) -> str:
        if self.base_url is None:
            raise StagingError("Asset server is not running")
        return f"{self.base_url}/{file_name}"

    def close(self) -> None:
        """Stop the listener. Idempotent."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.debug("Asset server %s closed", self.base_url)
        self._server = None
        self._thread = None
        self.base_url = None
