from __future__ import annotations

import json
import logging
import re
import time
from http import HTTPStatus
from typing import Any, Dict, Iterable, Optional

from libs.python.http_core import Handler, HttpRequest, HttpResponse, RequestContext, Route


JsonDict = Dict[str, Any]

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("gallery_api.access")

HOME_PAYLOAD: JsonDict = {"service": "gallery-api", "status": "ok"}


def make_json_response(status: HTTPStatus | int, data: JsonDict) -> HttpResponse:
    body = json.dumps(data).encode()
    headers = {
        "Content-Type": "application/json",
        "Content-Length": str(len(body)),
    }
    return HttpResponse(int(status), headers, body)


def json_error(status: HTTPStatus | int, message: str) -> HttpResponse:
    return make_json_response(status, {"error": message})


def not_found() -> HttpResponse:
    return json_error(HTTPStatus.NOT_FOUND, "Not Found")


class AbstractHandler(Handler):
    def __init__(self) -> None:
        self._next: Optional[Handler] = None

    def set_next(self, handler: Handler) -> Handler:
        self._next = handler
        return handler

    def _handle_next(self, ctx: RequestContext) -> HttpResponse:
        assert self._next is not None, f"{type(self).__name__} is the end of the chain"
        return self._next.handle(ctx)


class ErrorHandler(AbstractHandler):
    def handle(self, ctx: RequestContext) -> HttpResponse:  # noqa: D401
        try:
            return self._handle_next(ctx)
        except Exception:  # noqa: BLE001
            logger.exception("unhandled error serving %s %s", ctx.request.method, ctx.request.path)
            ctx.response = json_error(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")
            return ctx.response


class LoggingHandler(AbstractHandler):
    """Emits one JSON access line per request."""

    def handle(self, ctx: RequestContext) -> HttpResponse:  # noqa: D401
        start = time.time()
        response = self._handle_next(ctx)
        duration_ms = round((time.time() - start) * 1000, 1)
        entry = {
            "ts": int(time.time() * 1000),
            "method": ctx.request.method,
            "path": ctx.request.path,
            "status": int(response.status),
            "ms": duration_ms,
            "remote": ctx.request.client[0] if ctx.request.client else None,
        }
        access_logger.info(json.dumps(entry, separators=(",", ":")))
        return response


class RoutingHandler(AbstractHandler):
    def __init__(self, routes: Iterable[Route]) -> None:
        super().__init__()
        self._routes = list(routes)

    def handle(self, ctx: RequestContext) -> HttpResponse:  # noqa: D401
        path = ctx.request.path
        for route in self._routes:
            match = route.pattern.match(path)
            if not match:
                continue
            ctx.route = route
            ctx.params = match.groupdict()
            return self._handle_next(ctx)
        ctx.response = not_found()
        return ctx.response


class DispatchHandler(AbstractHandler):
    """Runs the route picked by :class:`RoutingHandler`."""

    def handle(self, ctx: RequestContext) -> HttpResponse:  # noqa: D401
        assert ctx.route is not None
        ctx.response = ctx.route.handler(ctx)
        return ctx.response


class RequestProcessor:
    """Facade executed by the manual HTTP server."""

    def __init__(self, entry: Handler) -> None:
        self._entry = entry

    def handle(self, request: HttpRequest) -> HttpResponse:
        ctx = RequestContext(request=request)
        response = self._entry.handle(ctx)
        response.headers.setdefault("Access-Control-Allow-Origin", "*")
        response.ensure_content_length()
        return response


def handle_home(_: RequestContext) -> HttpResponse:
    return make_json_response(HTTPStatus.OK, HOME_PAYLOAD)


def default_routes() -> list[Route]:
    # The root pattern is a prefix match, so every path lands on it.
    return [Route("home", re.compile(r"^/"), handle_home)]


def build_handler(routes: Optional[Iterable[Route]] = None) -> RequestProcessor:
    routes = list(routes) if routes is not None else default_routes()

    logging_handler = LoggingHandler()
    error_handler = ErrorHandler()
    routing_handler = RoutingHandler(routes)
    dispatch_handler = DispatchHandler()

    logging_handler.set_next(error_handler)
    error_handler.set_next(routing_handler)
    routing_handler.set_next(dispatch_handler)

    return RequestProcessor(logging_handler)


__all__ = [
    "build_handler",
    "default_routes",
    "RequestProcessor",
]
