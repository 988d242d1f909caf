from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass
class GalleryApiConfig:
    host: str
    port: int
    shutdown_timeout: float
    request_timeout: float
    log_level: str


def load_config() -> GalleryApiConfig:
    host = os.environ.get("GALLERY_API_HOST", "0.0.0.0")
    port = _coerce_port(os.environ.get("GALLERY_API_PORT", "9090"))
    shutdown_timeout = _coerce_seconds("GALLERY_API_SHUTDOWN_TIMEOUT", os.environ.get("GALLERY_API_SHUTDOWN_TIMEOUT", "10"))
    request_timeout = _coerce_seconds("GALLERY_API_REQUEST_TIMEOUT", os.environ.get("GALLERY_API_REQUEST_TIMEOUT", "30"))
    log_level = _coerce_log_level(os.environ.get("GALLERY_API_LOG_LEVEL", "INFO"))
    return GalleryApiConfig(
        host=host,
        port=port,
        shutdown_timeout=shutdown_timeout,
        request_timeout=request_timeout,
        log_level=log_level,
    )


def _coerce_port(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"invalid port number: {raw}") from exc
    if value < 0 or value > 65535:
        raise ValueError(f"invalid port number: {raw}")
    return value


def _coerce_seconds(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _coerce_log_level(raw: str) -> str:
    level = raw.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"unknown log level: {raw}")
    return level


__all__ = ["GalleryApiConfig", "load_config"]
