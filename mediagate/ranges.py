# mediagate/ranges.py
from __future__ import annotations

import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple
from urllib.parse import quote

from fastapi import Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .errors import MediaError, NotFound
from .storage import LocalStorage

log = logging.getLogger("stream")

MAX_CHUNK = 1024 * 1024
READ_CHUNK = 256 * 1024

_UNSAFE_HEADER_CHARS = re.compile(r'[^\x20-\x7e]|["\\]')


# -----------------------------------------------------------------------------
# Header helpers
# -----------------------------------------------------------------------------
def _http_date(ts: float) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


def _etag(st: os.stat_result) -> str:
    base = f"{st.st_mtime_ns}-{st.st_size}"
    return f'W/"{hashlib.md5(base.encode()).hexdigest()}"'


def content_disposition(name: str, disposition: str = "inline") -> str:
    """Latin-1-safe header value: an ASCII ``filename`` plus RFC 5987 ``filename*`` when needed."""
    fallback = _UNSAFE_HEADER_CHARS.sub("_", name) or "file"
    if fallback == name:
        return f'{disposition}; filename="{name}"'
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


class RangeNotSatisfiable(MediaError):
    status_code_default = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    message_default = "Requested range not satisfiable"

    def __init__(self, size: int):
        super().__init__(headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"})


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """First ``bytes=start-end`` window, or None when the whole file should be sent.

    Suffix ranges (``-N``) and anything malformed fall back to the full file.
    A start at or past EOF raises RangeNotSatisfiable.
    """
    if not header:
        return None
    unit, _, spec_all = header.partition("=")
    if unit.strip().lower() != "bytes" or not spec_all:
        return None
    spec = spec_all.split(",", 1)[0].strip()
    start_s, dash, end_s = spec.partition("-")
    start_s, end_s = start_s.strip(), end_s.strip()
    if not dash or not start_s.isdigit() or (end_s and not end_s.isdigit()):
        return None
    start = int(start_s)
    if start >= size:
        raise RangeNotSatisfiable(size)
    end = size - 1 if not end_s else int(end_s)
    if end < start:
        return None
    return start, min(end, size - 1)


# -----------------------------------------------------------------------------
# Responder
# -----------------------------------------------------------------------------
class RangeResponder:
    def __init__(self, storage: LocalStorage, max_chunk: int = MAX_CHUNK, read_chunk: int = READ_CHUNK):
        self.storage = storage
        self.max_chunk = max(1, int(max_chunk))
        self.read_chunk = max(1, min(int(read_chunk), self.max_chunk))

    async def serve(
        self,
        request: Request,
        file_path: Path,
        content_type: str,
        *,
        cache_control: str = "no-transform, private, max-age=0, must-revalidate",
        extra_headers: Optional[Dict[str, str]] = None,
        disposition: str = "inline",
    ) -> StreamingResponse:
        try:
            st = await self.storage.stat(file_path)
        except NotFound:
            raise
        except OSError as e:
            log.error("stat failed for %s: %s", file_path, e)
            raise MediaError("Could not read file") from e
        size = st.st_size

        window = parse_range(request.headers.get("range"), size)

        headers = {
            "Accept-Ranges": "bytes",
            "ETag": _etag(st),
            "Last-Modified": _http_date(st.st_mtime),
            "Cache-Control": cache_control,
            "Content-Disposition": content_disposition(os.path.basename(file_path), disposition),
        }
        if extra_headers:
            headers.update(extra_headers)

        if window is None:
            start, length, code = 0, size, status.HTTP_200_OK
        else:
            start, end = window
            # clamp so a single request never streams more than max_chunk
            end = min(end, start + self.max_chunk - 1)
            length = end - start + 1
            code = status.HTTP_206_PARTIAL_CONTENT
            headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        headers["Content-Length"] = str(length)

        try:
            f = await self.storage.open_read(file_path)
        except OSError as e:
            log.error("open failed for %s: %s", file_path, e)
            raise MediaError("Could not read file") from e

        try:
            return StreamingResponse(
                self._body(request, f, start, length, file_path),
                status_code=code,
                headers=headers,
                media_type=content_type,
                background=BackgroundTask(f.close),
            )
        except Exception:
            f.close()
            raise

    async def _body(self, request: Request, f, start: int, length: int, path: Path) -> AsyncIterator[bytes]:
        chunks = self.storage.iter_open(f, start, length, self.read_chunk)
        try:
            async for data in chunks:
                if await request.is_disconnected():
                    log.debug("client went away while streaming %s", path.name)
                    break
                yield data
        except OSError:
            # headers are already out; all we can do is drop the connection
            log.exception("read failed mid-stream for %s", path)
            raise
        finally:
            await chunks.aclose()
