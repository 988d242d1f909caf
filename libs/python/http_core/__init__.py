"""Shared HTTP server primitives used across Python services."""

from .errors import ServerError, ServerStartError, ShutdownTimeoutError
from .http import Handler, HttpRequest, HttpResponse, RequestContext, Route
from .server import HttpServer, RequestHandler, ServerState

__all__ = [
    "Handler",
    "HttpRequest",
    "HttpResponse",
    "HttpServer",
    "RequestContext",
    "RequestHandler",
    "Route",
    "ServerError",
    "ServerStartError",
    "ServerState",
    "ShutdownTimeoutError",
]
