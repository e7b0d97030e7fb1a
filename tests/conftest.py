"""Shared fixtures: temporary stores and media files, fake transmitters and a local upload server."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict

import pytest

from album_sync.dedup_store import DedupStore
from album_sync.errors import NetworkError, UploadRejectedError


@pytest.fixture
def store(tmp_path) -> DedupStore:
    """Fresh dedup store in a temporary folder."""
    return DedupStore.open(tmp_path / "images.db")


@pytest.fixture
def media_files(tmp_path) -> Dict[str, Path]:
    """
    Small files for upload scenarios:
    - two files with identical bytes under different names
    - one unique file
    - one empty file
    """
    folder = tmp_path / "media"
    folder.mkdir()
    files = {
        "a": folder / "IMG_0001.jpg",
        "a_copy": folder / "copy_of_IMG_0001.jpg",
        "b": folder / "IMG_0002.jpg",
        "empty": folder / "empty.png",
    }
    files["a"].write_bytes(b"\xff\xd8" + b"A" * 4096)
    files["a_copy"].write_bytes(b"\xff\xd8" + b"A" * 4096)
    files["b"].write_bytes(b"\xff\xd8" + b"B" * 2048)
    files["empty"].write_bytes(b"")
    return files


class RecordingTransmitter:
    """Counts attempts and answers from a scripted list of results (None = success)."""

    def __init__(self, script=None, delay: float = 0.0):
        self._script = list(script or [])
        self._delay = delay
        self._lock = threading.Lock()
        self.attempts = 0
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    def transmit(self, album, path, fingerprint):
        with self._lock:
            self.attempts += 1
            self.calls.append((album, path, fingerprint))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            outcome = self._script.pop(0) if self._script else None
        try:
            if self._delay:
                time.sleep(self._delay)
            if outcome is not None:
                raise outcome
        finally:
            with self._lock:
                self.in_flight -= 1


class AlwaysDropTransmitter(RecordingTransmitter):
    def transmit(self, album, path, fingerprint):
        with self._lock:
            self.attempts += 1
        raise NetworkError("connection reset by peer")


class AlwaysRejectTransmitter(RecordingTransmitter):
    def transmit(self, album, path, fingerprint):
        with self._lock:
            self.attempts += 1
        raise UploadRejectedError("Server refused upload (HTTP 200, stat='fail')", status=200)


@pytest.fixture
def recording_transmitter():
    return RecordingTransmitter()


class _UploadHandler(BaseHTTPRequestHandler):
    """Behaviour is picked by ``server.mode``: hangup, ok, fail or garbage."""

    def do_POST(self):  # noqa: N802
        server = self.server
        with server.lock:
            server.requests += 1
            server.headers_seen.append(dict(self.headers))
        length = int(self.headers.get("Content-Length", 0))
        server.bodies.append(self.rfile.read(length))

        if server.mode == "hangup":
            # Rudely drop the connection without answering.
            self.close_connection = True
            return

        if server.mode == "garbage":
            payload = b"<html>not json</html>"
        else:
            payload = json.dumps({"stat": server.mode}).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):  # noqa: A002
        pass


@pytest.fixture
def upload_server():
    """Local HTTP server standing in for the upload endpoint. Set ``.mode`` before use."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _UploadHandler)
    server.mode = "ok"
    server.requests = 0
    server.headers_seen = []
    server.bodies = []
    server.lock = threading.Lock()
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    server.url = f"http://127.0.0.1:{server.server_address[1]}/"
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()
