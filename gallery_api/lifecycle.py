"""Graceful shutdown driven by process termination signals."""

from __future__ import annotations

import logging
import selectors
import signal
import socket
from contextlib import suppress
from typing import Any, Dict, Iterable, Optional

from libs.python.http_core import HttpServer, ServerStartError, ServerState, ShutdownTimeoutError

DEFAULT_SHUTDOWN_TIMEOUT = 10.0
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

logger = logging.getLogger(__name__)


class ShutdownCoordinator:
    """Runs ``server`` until a termination signal, then drains it.

    SIGINT and SIGTERM are treated the same. Only the first trigger counts;
    signals that arrive while the shutdown is in progress are ignored.

    The signal handler only assigns plain attributes and writes one byte to
    a socket pair; it never takes a lock, so it is safe to re-enter when
    signals arrive back to back. The waiter blocks on the read end of that
    pair, which the server-error path writes to as well.
    """

    def __init__(
        self,
        server: HttpServer,
        timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS,
    ) -> None:
        self._server = server
        self._timeout = timeout
        self._signals = tuple(signals)
        self._requested = False
        self._signum: Optional[int] = None
        self._server_error: Optional[BaseException] = None
        self._previous_handlers: Dict[int, Any] = {}
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        server.on_fatal_error = self._on_server_error

    @property
    def state(self) -> ServerState:
        return self._server.state

    @property
    def received_signal(self) -> Optional[int]:
        return self._signum

    def install_signal_handlers(self) -> None:
        """Route the shutdown signals to this coordinator (main thread only)."""

        for sig in self._signals:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        while self._previous_handlers:
            sig, previous = self._previous_handlers.popitem()
            signal.signal(sig, previous)

    def request_shutdown(self, signum: Optional[int] = None) -> bool:
        """Trigger the shutdown; returns ``False`` if it was already triggered."""

        if self._requested:
            return False
        self._requested = True
        self._signum = signum
        self._wake()
        return True

    def wait_for_signal(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested or the server fails.

        Returns ``False`` only when ``timeout`` elapses first.
        """

        with selectors.DefaultSelector() as selector:
            selector.register(self._wake_r, selectors.EVENT_READ)
            while not self._triggered():
                if not selector.select(timeout):
                    return self._triggered()
                self._drain()
        return True

    def run(self) -> int:
        """Serve until told to stop and return the process exit code."""

        try:
            self._server.start()
        except ServerStartError as exc:
            logger.error("%s", exc)
            return 1
        _, port = self._server.server_address
        logger.info("start server :%d", port)

        self.wait_for_signal()
        if self._server_error is not None:
            logger.error("server error: %s", self._server_error)
            return 1

        if self._signum is not None:
            logger.debug("received %s", signal.Signals(self._signum).name)
        logger.info("shutdown start...")
        try:
            self._server.shutdown(self._timeout)
        except ShutdownTimeoutError as exc:
            logger.error("shutdown error: %s", exc)
            return 1
        logger.info("shutdown complete")
        return 0

    def close(self) -> None:
        self._wake_r.close()
        self._wake_w.close()

    def _triggered(self) -> bool:
        return self._requested or self._server_error is not None

    def _handle_signal(self, signum, frame):  # noqa: ARG002
        self.request_shutdown(signum)

    def _on_server_error(self, exc: BaseException) -> None:
        self._server_error = exc
        self._wake()

    def _wake(self) -> None:
        # A full buffer already guarantees a pending wake-up.
        with suppress(BlockingIOError):
            self._wake_w.send(b"\0")

    def _drain(self) -> None:
        with suppress(BlockingIOError):
            while self._wake_r.recv(64):
                pass


__all__ = ["DEFAULT_SHUTDOWN_TIMEOUT", "SHUTDOWN_SIGNALS", "ShutdownCoordinator"]
