from __future__ import annotations

import os
import urllib.error
import urllib.request

from gallery_api.config import load_config


def is_healthy(host: str, port: int, timeout: float) -> bool:
    url = f"http://{host}:{port}/"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            return 200 <= resp.getcode() < 400
    except urllib.error.URLError:
        return False
    except OSError:
        return False


def main() -> None:
    cfg = load_config()
    host = os.environ.get("HEALTH_HOST", "127.0.0.1")
    timeout = float(os.environ.get("HEALTH_TIMEOUT", "2"))
    if not is_healthy(host, cfg.port, timeout):
        raise SystemExit(f"no healthy instance on {host}:{cfg.port}")


if __name__ == "__main__":  # pragma: no cover - cli entry point
    main()
