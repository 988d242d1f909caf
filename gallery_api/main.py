from __future__ import annotations

import logging
import sys
from typing import Iterable, Optional, TextIO

from libs.python.http_core import HttpServer, Route

from .app.handlers import build_handler
from .config import GalleryApiConfig, load_config
from .lifecycle import ShutdownCoordinator

LOG_FORMAT = "%(asctime)s %(message)s"
LOG_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"

logger = logging.getLogger("gallery_api")


def configure_logging(level: str = "INFO", stream: Optional[TextIO] = None) -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=stream or sys.stderr,
        force=True,
    )


def build_server(config: GalleryApiConfig, routes: Optional[Iterable[Route]] = None) -> HttpServer:
    return HttpServer(
        build_handler(routes),
        config.host,
        config.port,
        request_timeout=config.request_timeout,
    )


def main(routes: Optional[Iterable[Route]] = None) -> int:
    try:
        config = load_config()
    except ValueError as exc:
        configure_logging()
        logger.error("invalid configuration: %s", exc)
        return 1

    configure_logging(config.log_level)
    coordinator = ShutdownCoordinator(build_server(config, routes), config.shutdown_timeout)
    coordinator.install_signal_handlers()
    try:
        return coordinator.run()
    finally:
        coordinator.restore_signal_handlers()
        coordinator.close()


if __name__ == "__main__":  # pragma: no cover - cli entry point
    sys.exit(main())
