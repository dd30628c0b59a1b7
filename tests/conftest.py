"""Pytest configuration and fixtures for httpchain tests.

This file provides:
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the mock API server
- raw_response / RecordingBackend: canned wire responses for httpcore.MockBackend
- Fixtures: Shared test infrastructure (mock server, proxy-free environment)
"""

from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Generator, Iterable

import httpcore
import pytest

# Project root for subprocess cwd
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

# TEST-NET-3 address: never routed, so a literal-IP URL can't leak to a real host.
TEST_IP = "203.0.113.10"


def raw_response(
    status: int = 200,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    reason: str = "OK",
) -> list[bytes]:
    """Build an HTTP/1.1 response as the byte chunks httpcore.MockBackend replays.

    Content-Length is added unless *headers* already sets it.
    """
    headers = dict(headers or {})
    if not any(name.lower() == "content-length" for name in headers):
        headers["Content-Length"] = str(len(body))
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += "".join(f"{name}: {value}\r\n" for name, value in headers.items())
    head += "\r\n"
    chunks = [head.encode("latin-1")]
    if body:
        chunks.append(body)
    return chunks


def json_response(payload: bytes, status: int = 200) -> list[bytes]:
    return raw_response(status, payload, {"Content-Type": "application/json"})


class RecordingBackend(httpcore.MockBackend):
    """MockBackend that also records every connect_tcp target (host, port, timeout)."""

    def __init__(self, buffer: list[bytes], http2: bool = False) -> None:
        super().__init__(buffer, http2=http2)
        self.connections: list[tuple[str, int, float | None]] = []

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: Iterable[Any] | None = None,
    ) -> httpcore.NetworkStream:
        self.connections.append((host, port, timeout))
        return super().connect_tcp(host, port, timeout, local_address, socket_options)


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    find_free_port() style allocation has a race window: another process can
    grab the port between when we find it and when our server binds. This class
    keeps the socket open until just before the server starts.

    Usage:
        reservation = PortReservation()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Manages the mock server subprocess for integration tests.

    Runs tests/integration/mock_server.py under uvicorn as a subprocess.
    """

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the subprocess: SIGTERM first, SIGKILL after 5s.

        Safe to call multiple times or if server was never started.
        """
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait(timeout=5)
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def mock_server() -> Generator[MockServer, None, None]:
    """Session-scoped mock server; server.base_url is http://127.0.0.1:<port>."""
    with MockServer(PortReservation()) as server:
        yield server


@pytest.fixture
def no_proxy_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every *_proxy variable so the environment proxy policy selects nothing."""
    for name in list(os.environ):
        if name.lower().endswith("_proxy"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
