from .config import GalleryApiConfig, load_config
from .lifecycle import ShutdownCoordinator
from .main import build_server, main

__all__ = [
    "GalleryApiConfig",
    "load_config",
    "ShutdownCoordinator",
    "build_server",
    "main",
]
