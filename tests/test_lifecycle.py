from __future__ import annotations

import logging
import os
import signal
import socket
import threading

import pytest

from conftest import GET_ROOT, BackgroundRequest, send_raw, wait_until
from gallery_api.app.handlers import build_handler
from gallery_api.lifecycle import ShutdownCoordinator
from libs.python.http_core import HttpServer, ServerState


class _RunInThread:
    def __init__(self, coordinator: ShutdownCoordinator) -> None:
        self.exit_code: int | None = None
        self._thread = threading.Thread(target=self._run, args=(coordinator,), daemon=True)
        self._thread.start()

    def _run(self, coordinator: ShutdownCoordinator) -> None:
        self.exit_code = coordinator.run()

    def join(self, timeout: float = 10.0) -> None:
        self._thread.join(timeout)


@pytest.fixture
def coordinator_for():
    created: list[ShutdownCoordinator] = []

    def factory(server: HttpServer, **kwargs) -> ShutdownCoordinator:
        coordinator = ShutdownCoordinator(server, **kwargs)
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        coordinator.close()


def test_request_shutdown_is_only_honoured_once(coordinator_for, make_server) -> None:
    coordinator = coordinator_for(make_server(build_handler()), timeout=1.0)

    assert coordinator.request_shutdown(signal.SIGTERM) is True
    assert coordinator.request_shutdown(signal.SIGINT) is False
    assert coordinator.received_signal == signal.SIGTERM
    assert coordinator.wait_for_signal(0) is True


def test_state_is_read_from_server(coordinator_for, make_server) -> None:
    server = make_server(build_handler())
    coordinator = coordinator_for(server)

    assert coordinator.state is ServerState.NEW
    server.start()
    assert coordinator.state is ServerState.RUNNING


def test_clean_shutdown_returns_zero(coordinator_for, make_server, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="gallery_api")
    server = make_server(build_handler())
    coordinator = coordinator_for(server, timeout=5.0)

    runner = _RunInThread(coordinator)
    assert wait_until(lambda: server.state is ServerState.RUNNING)
    assert send_raw(server.server_address, GET_ROOT).startswith(b"HTTP/1.1 200 OK")

    coordinator.request_shutdown()
    runner.join()

    assert runner.exit_code == 0
    assert coordinator.state is ServerState.STOPPED
    messages = [record.getMessage() for record in caplog.records if record.name == "gallery_api.lifecycle"]
    assert messages == [
        f"start server :{server.server_address[1]}",
        "shutdown start...",
        "shutdown complete",
    ]


def test_in_flight_request_finishes_before_exit(coordinator_for, make_server, slow_handler) -> None:
    server = make_server(slow_handler)
    coordinator = coordinator_for(server, timeout=5.0)

    runner = _RunInThread(coordinator)
    assert wait_until(lambda: server.state is ServerState.RUNNING)
    request = BackgroundRequest(server.server_address)
    assert slow_handler.entered.wait(5)

    coordinator.request_shutdown()
    assert wait_until(lambda: server.state is ServerState.SHUTTING_DOWN)
    slow_handler.release.set()
    runner.join()
    request.join()

    assert runner.exit_code == 0
    assert request.response is not None
    assert request.response.startswith(b"HTTP/1.1 200 OK")


def test_deadline_expiry_returns_non_zero(coordinator_for, make_server, slow_handler, caplog: pytest.LogCaptureFixture) -> None:
    server = make_server(slow_handler)
    coordinator = coordinator_for(server, timeout=0.2)

    runner = _RunInThread(coordinator)
    assert wait_until(lambda: server.state is ServerState.RUNNING)
    request = BackgroundRequest(server.server_address)
    assert slow_handler.entered.wait(5)

    coordinator.request_shutdown()
    runner.join()

    assert runner.exit_code == 1
    assert coordinator.state is ServerState.TIMED_OUT
    assert "shutdown error: graceful shutdown exceeded 0.2s deadline" in caplog.text

    slow_handler.release.set()
    request.join()


def test_startup_failure_returns_non_zero(coordinator_for, caplog: pytest.LogCaptureFixture) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        coordinator = coordinator_for(HttpServer(build_handler(), "127.0.0.1", port), timeout=1.0)

        exit_code = coordinator.run()

    assert exit_code == 1
    assert coordinator.state is ServerState.NEW
    assert f"cannot listen on 127.0.0.1:{port}" in caplog.text


def test_serve_loop_failure_wakes_the_coordinator(coordinator_for, make_server, caplog: pytest.LogCaptureFixture) -> None:
    server = make_server(build_handler())
    coordinator = coordinator_for(server, timeout=1.0)

    runner = _RunInThread(coordinator)
    assert wait_until(lambda: server.state is ServerState.RUNNING)
    server.on_fatal_error(OSError("listener lost"))
    runner.join()

    assert runner.exit_code == 1
    assert "server error: listener lost" in caplog.text


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
def test_termination_signal_triggers_graceful_shutdown(coordinator_for, make_server, signum: signal.Signals) -> None:
    server = make_server(build_handler())
    coordinator = coordinator_for(server, timeout=5.0)
    coordinator.install_signal_handlers()
    timer = threading.Timer(0.3, os.kill, args=(os.getpid(), signum))
    try:
        timer.start()
        exit_code = coordinator.run()
    finally:
        timer.cancel()
        coordinator.restore_signal_handlers()

    assert exit_code == 0
    assert coordinator.received_signal == signum
    assert server.state is ServerState.STOPPED


def test_second_signal_during_shutdown_is_ignored(coordinator_for, make_server, slow_handler) -> None:
    server = make_server(slow_handler)
    coordinator = coordinator_for(server, timeout=5.0)
    coordinator.install_signal_handlers()
    try:
        runner = _RunInThread(coordinator)
        assert wait_until(lambda: server.state is ServerState.RUNNING)
        request = BackgroundRequest(server.server_address)
        assert slow_handler.entered.wait(5)

        os.kill(os.getpid(), signal.SIGTERM)
        assert wait_until(lambda: server.state is ServerState.SHUTTING_DOWN)
        os.kill(os.getpid(), signal.SIGINT)

        slow_handler.release.set()
        runner.join()
        request.join()
    finally:
        coordinator.restore_signal_handlers()

    assert runner.exit_code == 0
    assert coordinator.received_signal == signal.SIGTERM
    assert server.state is ServerState.STOPPED


def test_restore_puts_previous_handlers_back(coordinator_for, make_server) -> None:
    coordinator = coordinator_for(make_server(build_handler()))
    before = signal.getsignal(signal.SIGTERM)

    coordinator.install_signal_handlers()
    assert signal.getsignal(signal.SIGTERM) is not before
    coordinator.restore_signal_handlers()

    assert signal.getsignal(signal.SIGTERM) is before


def test_back_to_back_signals_keep_the_first_one(coordinator_for, make_server) -> None:
    server = make_server(build_handler())
    coordinator = coordinator_for(server, timeout=5.0)

    def send_signals() -> None:
        assert wait_until(lambda: server.state is ServerState.RUNNING)
        os.kill(os.getpid(), signal.SIGTERM)
        os.kill(os.getpid(), signal.SIGTERM)
        assert wait_until(lambda: coordinator.received_signal is not None)
        os.kill(os.getpid(), signal.SIGINT)

    coordinator.install_signal_handlers()
    sender = threading.Thread(target=send_signals, daemon=True)
    try:
        sender.start()
        exit_code = coordinator.run()
        sender.join(5)
    finally:
        coordinator.restore_signal_handlers()

    assert exit_code == 0
    assert coordinator.received_signal == signal.SIGTERM
    assert server.state is ServerState.STOPPED


def test_signal_handler_reentered_while_waking(coordinator_for, make_server) -> None:
    coordinator = coordinator_for(make_server(build_handler()))
    wake = coordinator._wake

    def wake_with_nested_signal() -> None:
        coordinator._wake = wake
        coordinator._handle_signal(signal.SIGINT, None)
        wake()

    coordinator._wake = wake_with_nested_signal
    coordinator._handle_signal(signal.SIGTERM, None)

    assert coordinator.received_signal == signal.SIGTERM
    assert coordinator.wait_for_signal(1.0) is True
