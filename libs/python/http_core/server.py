from __future__ import annotations

"""Manual HTTP/1.1 server implemented directly over sockets.

:class:`HttpServer` owns the listening socket, runs the accept loop on a
background thread and serves each connection on its own thread. It also owns
the lifecycle state and the in-flight request accounting that graceful
shutdown relies on.
"""

import enum
import json
import logging
import selectors
import socket
import threading
import time
from contextlib import suppress
from http import HTTPStatus
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlsplit

from .errors import ServerStartError, ShutdownTimeoutError
from .http import HttpRequest, HttpResponse

MAX_HEADER_BYTES = 16 * 1024
MAX_BODY_BYTES = 5 * 1024 * 1024
POLL_INTERVAL = 0.1
# How long a connection that has not sent anything yet may keep the server
# waiting once shutdown has started, counted from accept.
IDLE_GRACE = 5.0

logger = logging.getLogger(__name__)


class RequestHandler(Protocol):
    def handle(self, request: HttpRequest) -> HttpResponse:
        """Process ``request`` and return an HTTP response."""


class ServerState(str, enum.Enum):
    NEW = "new"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (ServerState.STOPPED, ServerState.TIMED_OUT)


class _Connection:
    __slots__ = ("sock", "addr", "accepted_at", "active", "closed")

    def __init__(self, sock: socket.socket, addr: Tuple[str, int]) -> None:
        self.sock = sock
        self.addr = addr
        self.accepted_at = time.monotonic()
        self.active = False
        self.closed = False

    def close_idle(self) -> None:
        self.closed = True
        # shutdown() wakes the serving thread blocked in recv(); close() alone does not.
        with suppress(OSError):
            self.sock.shutdown(socket.SHUT_RDWR)


class HttpServer:
    """Threaded HTTP server with an explicit, graceful lifecycle."""

    def __init__(
        self,
        handler: RequestHandler,
        host: str = "0.0.0.0",
        port: int = 9090,
        *,
        request_timeout: float = 30.0,
        idle_grace: float = IDLE_GRACE,
        backlog: int = 128,
        on_fatal_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._handler = handler
        self._host = host
        self._port = port
        self._request_timeout = request_timeout
        self._idle_grace = idle_grace
        self._backlog = backlog
        self.on_fatal_error = on_fatal_error

        self._cond = threading.Condition()
        self._state = ServerState.NEW
        self._connections: set[_Connection] = set()
        self._active = 0
        self._sock: Optional[socket.socket] = None
        self._bound: Optional[Tuple[str, int]] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop_accepting = threading.Event()
        self._shutdown_error: Optional[ShutdownTimeoutError] = None
        self.serve_error: Optional[BaseException] = None

    @property
    def state(self) -> ServerState:
        with self._cond:
            return self._state

    @property
    def active_requests(self) -> int:
        with self._cond:
            return self._active

    @property
    def open_connections(self) -> int:
        with self._cond:
            return len(self._connections)

    @property
    def server_address(self) -> Tuple[str, int]:
        """The bound address once started, the configured one before."""

        if self._bound is None:
            return self._host, self._port
        return self._bound

    def start(self) -> None:
        """Bind the listener and start accepting connections in the background.

        Returns as soon as the socket is listening. Raises
        :class:`ServerStartError` when the address cannot be bound.
        """

        with self._cond:
            if self._state is not ServerState.NEW:
                raise RuntimeError(f"server cannot be started from state {self._state.value}")
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._host, self._port))
                sock.listen(self._backlog)
                sock.setblocking(False)
            except OSError as exc:
                sock.close()
                raise ServerStartError(self._host, self._port, exc) from exc
            self._sock = sock
            self._bound = sock.getsockname()[:2]
            self._state = ServerState.RUNNING
            self._accept_thread = threading.Thread(target=self._accept_loop, name="http-accept", daemon=True)
            self._accept_thread.start()
        logger.debug("listening on %s:%d", *self.server_address)

    def shutdown(self, timeout: float) -> None:
        """Stop accepting connections and drain in-flight requests.

        Connections that were accepted but have not sent a request yet get
        ``idle_grace`` seconds (bounded by the deadline) to send one; a
        request arriving in that window is served. Blocks until every
        request has completed, or raises :class:`ShutdownTimeoutError` once
        ``timeout`` seconds have elapsed.
        """

        deadline = time.monotonic() + timeout
        with self._cond:
            if self._state is ServerState.NEW:
                raise RuntimeError("server has not been started")
            if self._state is ServerState.SHUTTING_DOWN:
                self._wait_for_terminal_state(deadline)
                return self._finish_repeated_call(timeout)
            if self._state.is_terminal:
                return self._finish_repeated_call(timeout)
            self._state = ServerState.SHUTTING_DOWN

        self._stop_accepting.set()
        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(max(0.0, deadline - time.monotonic()))
        self._close_listener()
        logger.debug("listener closed")

        with self._cond:
            while True:
                now = time.monotonic()
                expired = now >= deadline
                waiting = self._close_expired_idle(now, force=expired)
                if self._active == 0 and not waiting:
                    break
                if expired:
                    self._shutdown_error = ShutdownTimeoutError(timeout, self._active)
                    self._state = ServerState.TIMED_OUT
                    self._cond.notify_all()
                    raise self._shutdown_error
                wake_at = deadline
                if waiting:
                    wake_at = min(wake_at, min(conn.accepted_at for conn in waiting) + self._idle_grace)
                self._cond.wait(max(0.0, wake_at - now))
            self._state = ServerState.STOPPED
            self._cond.notify_all()

    def _close_expired_idle(self, now: float, force: bool) -> List[_Connection]:
        waiting: List[_Connection] = []
        for conn in self._connections:
            if conn.active or conn.closed:
                continue
            if force or now - conn.accepted_at >= self._idle_grace:
                conn.close_idle()
            else:
                waiting.append(conn)
        return waiting

    def _wait_for_terminal_state(self, deadline: float) -> None:
        while not self._state.is_terminal:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._cond.wait(remaining)

    def _finish_repeated_call(self, timeout: float) -> None:
        if self._state is ServerState.TIMED_OUT and self._shutdown_error is not None:
            raise self._shutdown_error
        if self._state is ServerState.SHUTTING_DOWN:
            raise ShutdownTimeoutError(timeout, self._active)

    def _close_listener(self) -> None:
        if self._sock is not None:
            with suppress(OSError):
                self._sock.close()

    def _accept_loop(self) -> None:
        assert self._sock is not None
        with selectors.DefaultSelector() as selector:
            selector.register(self._sock, selectors.EVENT_READ)
            while not self._stop_accepting.is_set():
                try:
                    if not selector.select(POLL_INTERVAL):
                        continue
                    sock, addr = self._sock.accept()
                except BlockingIOError:
                    continue
                except OSError as exc:
                    if self._stop_accepting.is_set():
                        break
                    self.serve_error = exc
                    logger.error("accept loop failed: %s", exc)
                    if self.on_fatal_error is not None:
                        self.on_fatal_error(exc)
                    return
                self._spawn(sock, addr)

    def _spawn(self, sock: socket.socket, addr: Tuple[str, int]) -> None:
        conn = _Connection(sock, addr)
        with self._cond:
            if self._state is not ServerState.RUNNING:
                sock.close()
                return
            self._connections.add(conn)
        thread = threading.Thread(target=self._serve_connection, args=(conn,), daemon=True)
        thread.start()

    def _mark_active(self, conn: _Connection) -> bool:
        with self._cond:
            if conn.closed:
                return False
            conn.active = True
            self._active += 1
            self._cond.notify_all()
            return True

    def _serve_connection(self, conn: _Connection) -> None:
        try:
            with conn.sock:
                conn.sock.settimeout(self._request_timeout)
                self._serve_request(conn)
        finally:
            with self._cond:
                self._connections.discard(conn)
                if conn.active:
                    self._active -= 1
                self._cond.notify_all()

    def _serve_request(self, conn: _Connection) -> None:
        try:
            first = conn.sock.recv(4096)
        except OSError:
            return
        if not first or not self._mark_active(conn):
            return

        try:
            request = _read_request(conn.sock, conn.addr, first)
        except ValueError as exc:
            _write(conn.sock, "GET", _error_response(HTTPStatus.BAD_REQUEST, str(exc)))
            return
        except OSError:
            return
        if request is None:
            return

        try:
            response = self._handler.handle(request)
        except Exception:  # noqa: BLE001
            logger.exception("handler failed for %s %s", request.method, request.path)
            response = _error_response(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")

        _write(conn.sock, request.method, response)


def _read_request(sock: socket.socket, addr: Tuple[str, int], initial: bytes) -> Optional[HttpRequest]:
    buffer = bytearray(initial)
    while b"\r\n\r\n" not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise ValueError("header section too large")
        chunk = sock.recv(4096)
        if not chunk:
            return None
        buffer.extend(chunk)

    head, pending = bytes(buffer).split(b"\r\n\r\n", 1)
    if len(head) > MAX_HEADER_BYTES:
        raise ValueError("header section too large")
    method, target, headers = _parse_head(head)
    body = _read_body(sock, pending, _content_length(headers))
    parsed = urlsplit(target)
    return HttpRequest(
        method=method,
        target=target,
        path=parsed.path or "/",
        query=parsed.query,
        headers=headers,
        body=body,
        client=addr,
    )


def _parse_head(head: bytes) -> Tuple[str, str, Dict[str, str]]:
    request_line, *header_lines = head.split(b"\r\n")
    parts = request_line.decode("iso-8859-1").split()
    if len(parts) != 3:
        raise ValueError("invalid request line")
    method, target, version = parts
    if version not in ("HTTP/1.1", "HTTP/1.0"):
        raise ValueError("unsupported HTTP version")

    headers: Dict[str, str] = {}
    for line in filter(None, header_lines):
        name, sep, value = line.partition(b":")
        if not sep:
            raise ValueError("invalid header")
        headers[name.decode("ascii", "ignore").strip().lower()] = value.decode("iso-8859-1").strip()
    return method.upper(), target, headers


def _content_length(headers: Dict[str, str]) -> int:
    try:
        length = int(headers.get("content-length") or 0)
    except ValueError:
        length = 0
    return max(0, min(length, MAX_BODY_BYTES))


def _read_body(sock: socket.socket, pending: bytes, length: int) -> bytes:
    body = bytearray(pending[:length])
    while len(body) < length:
        chunk = sock.recv(min(65536, length - len(body)))
        if not chunk:
            break
        body.extend(chunk)
    return bytes(body)


def _error_response(status: HTTPStatus, message: str) -> HttpResponse:
    return HttpResponse(
        int(status),
        {"Content-Type": "application/json", "Access-Control-Allow-Origin": "*"},
        json.dumps({"error": message}).encode(),
    )


def _encode_response(method: str, response: HttpResponse) -> bytes:
    response.headers.setdefault("Connection", "close")
    response.ensure_content_length()
    try:
        reason = HTTPStatus(response.status).phrase
    except ValueError:
        reason = "OK"
    lines = [f"HTTP/1.1 {int(response.status)} {reason}"]
    lines.extend(f"{name.title()}: {value}" for name, value in response.headers.items())
    head = ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1")
    if method == "HEAD":
        return head
    return head + response.body


def _write(sock: socket.socket, method: str, response: HttpResponse) -> None:
    try:
        sock.sendall(_encode_response(method, response))
    except OSError as exc:
        logger.debug("client went away before the response was sent: %s", exc)


__all__ = ["HttpServer", "IDLE_GRACE", "RequestHandler", "ServerState"]
