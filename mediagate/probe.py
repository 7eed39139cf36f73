# mediagate/probe.py
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

from anyio import to_thread

log = logging.getLogger("probe")

_PROBE_CACHE_MAX = int(os.getenv("FFPROBE_CACHE_MAX", "256"))
_MISS_TTL = 30.0


@dataclass(frozen=True)
class MediaInfo:
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    bitrate: Optional[int] = None
    codec: Optional[str] = None
    audio_codec: Optional[str] = None
    has_audio: bool = False
    pix_fmt: Optional[str] = None
    profile: Optional[str] = None
    format_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.codec is None and self.duration is None

    def to_dict(self) -> dict:
        return asdict(self)


def _int(v) -> Optional[int]:
    try:
        return int(v) if v not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def _float(v) -> Optional[float]:
    try:
        return float(v) if v not in (None, "", "N/A") else None
    except (TypeError, ValueError):
        return None


def parse_ffprobe(data: dict) -> MediaInfo:
    """Build MediaInfo from ``ffprobe -show_streams -show_format -of json`` output."""
    fields: dict = {}
    got_v = got_a = False
    for s in data.get("streams", []) or []:
        ct = s.get("codec_type")
        if ct == "video" and not got_v:
            # cover art shows up as a single-frame video stream
            if (s.get("disposition") or {}).get("attached_pic"):
                continue
            fields.update(
                codec=(s.get("codec_name") or "").lower() or None,
                width=_int(s.get("width")),
                height=_int(s.get("height")),
                pix_fmt=s.get("pix_fmt"),
                profile=s.get("profile"),
                bitrate=_int(s.get("bit_rate")),
            )
            got_v = True
        elif ct == "audio" and not got_a:
            fields.update(audio_codec=(s.get("codec_name") or "").lower() or None, has_audio=True)
            got_a = True

    fmt = data.get("format") or {}
    fields["duration"] = _float(fmt.get("duration"))
    if not fields.get("bitrate"):
        fields["bitrate"] = _int(fmt.get("bit_rate"))
    fields["format_name"] = fmt.get("format_name")
    return MediaInfo(**fields)


class FFprobeInspector:
    """Async ffprobe wrapper with a small LRU keyed by (path, mtime_ns).

    Files ffprobe cannot read are remembered for ``miss_ttl`` seconds so
    polling clients do not spawn a probe per request.
    """

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 10.0, cache_max: int = _PROBE_CACHE_MAX,
                 miss_ttl: float = _MISS_TTL, clock: Callable[[], float] = time.monotonic):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.cache_max = cache_max
        self.miss_ttl = miss_ttl
        self._clock = clock
        self._cache: "OrderedDict[tuple[str, int], MediaInfo]" = OrderedDict()
        self._misses: "OrderedDict[tuple[str, int], float]" = OrderedDict()

    async def probe(self, path: Path | str) -> MediaInfo:
        path = str(path)
        try:
            st = await to_thread.run_sync(os.stat, path)
        except OSError:
            return MediaInfo()
        key = (path, st.st_mtime_ns)

        hit = self._cache.get(key)
        if hit is not None:
            self._cache.move_to_end(key)
            return hit

        missed_at = self._misses.get(key)
        if missed_at is not None:
            if self._clock() - missed_at < self.miss_ttl:
                return MediaInfo()
            del self._misses[key]

        info = await self._run(path)
        if info.is_empty:
            self._misses[key] = self._clock()
            while len(self._misses) > self.cache_max:
                self._misses.popitem(last=False)
        else:
            self._cache[key] = info
            while len(self._cache) > self.cache_max:
                self._cache.popitem(last=False)
        return info

    async def _run(self, path: str) -> MediaInfo:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffprobe_path,
                "-v", "error",
                "-show_streams",
                "-show_format",
                "-of", "json",
                path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            log.error("ffprobe not runnable (%s): %s", self.ffprobe_path, e)
            return MediaInfo()

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            log.warning("ffprobe timed out after %.1fs on %s", self.timeout, path)
            return MediaInfo()

        try:
            data = json.loads((stdout or b"").decode("utf-8", errors="ignore") or "{}")
        except json.JSONDecodeError:
            log.warning("ffprobe returned unreadable output for %s", path)
            return MediaInfo()
        return parse_ffprobe(data)
