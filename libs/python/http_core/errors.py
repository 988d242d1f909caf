from __future__ import annotations


class ServerError(Exception):
    """Base class for failures of the HTTP server lifecycle."""


class ServerStartError(ServerError):
    """The listener could not be bound or put into listening mode."""

    def __init__(self, host: str, port: int, cause: OSError) -> None:
        reason = cause.strerror or str(cause)
        super().__init__(f"cannot listen on {host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.cause = cause


class ShutdownTimeoutError(ServerError):
    """In-flight requests did not drain before the shutdown deadline."""

    def __init__(self, timeout: float, in_flight: int) -> None:
        super().__init__(
            f"graceful shutdown exceeded {timeout:g}s deadline with {in_flight} request(s) in flight"
        )
        self.timeout = timeout
        self.in_flight = in_flight


__all__ = ["ServerError", "ServerStartError", "ShutdownTimeoutError"]
