# run_server.py
import socket

import uvicorn

from mediagate.config import settings


def _is_port_available(host: str, port: int) -> bool:
    """Check if a TCP port is available for binding on the given host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
        return True
    except OSError:
        return False


if __name__ == "__main__":
    host, port = settings.HOST, int(settings.PORT)
    if not _is_port_available(host, port):
        raise SystemExit(f"Port {port} on {host} is already in use; set PORT to another value")

    print(f"Starting mediagate on {host}:{port}")
    print(f"Media root: {settings.media_root()}")
    # single process: claims live in the in-memory cache unless CACHE_BACKEND=redis
    uvicorn.run(
        "mediagate.main:app",
        host=host,
        port=port,
        log_level=settings.LOG_LEVEL.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        timeout_keep_alive=20,
    )
