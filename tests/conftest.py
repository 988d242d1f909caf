from __future__ import annotations

import socket
import threading
import time
from contextlib import suppress
from typing import Callable, Iterator

import pytest

from libs.python.http_core import HttpRequest, HttpResponse, HttpServer, ServerError, ServerState

GET_ROOT = b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n"


class SlowHandler:
    """Request handler that blocks until the test releases it."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def handle(self, request: HttpRequest) -> HttpResponse:
        self.calls += 1
        self.entered.set()
        self.release.wait(10)
        return HttpResponse(200, {"Content-Type": "text/plain"}, b"done")


def send_raw(address: tuple[str, int], payload: bytes, timeout: float = 5.0) -> bytes:
    with socket.create_connection(address, timeout=timeout) as sock:
        sock.sendall(payload)
        chunks: list[bytes] = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


def refuses_connections(address: tuple[str, int]) -> bool:
    try:
        with socket.create_connection(address, timeout=1.0):
            return False
    except ConnectionRefusedError:
        return True


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class BackgroundRequest:
    """Sends one raw request from a helper thread and keeps the reply."""

    def __init__(self, address: tuple[str, int], payload: bytes = GET_ROOT) -> None:
        self.response: bytes | None = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, args=(address, payload), daemon=True)
        self._thread.start()

    def _run(self, address: tuple[str, int], payload: bytes) -> None:
        try:
            self.response = send_raw(address, payload, timeout=10.0)
        except OSError as exc:
            self.error = exc

    def join(self, timeout: float = 10.0) -> None:
        self._thread.join(timeout)


@pytest.fixture
def slow_handler() -> Iterator[SlowHandler]:
    handler = SlowHandler()
    yield handler
    handler.release.set()


@pytest.fixture
def make_server() -> Iterator[Callable[..., HttpServer]]:
    created: list[HttpServer] = []

    def factory(handler, **kwargs) -> HttpServer:
        server = HttpServer(handler, "127.0.0.1", 0, **kwargs)
        created.append(server)
        return server

    yield factory

    for server in created:
        if server.state is ServerState.NEW:
            continue
        with suppress(ServerError):
            server.shutdown(1.0)
