# mediagate/planner.py
"""Decide between serving an original file, transcoding it, or going through HLS.

Also builds the adaptive ladder: candidate heights capped at the source height
(plus the source height itself), bitrate scaled linearly with height.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .encoder import Variant
from .paths import AssetPath
from .probe import MediaInfo

log = logging.getLogger("planner")

DEFAULT_HEIGHT = 1080
DEFAULT_BITRATE = 5_000_000

FORMATS = ("mp4", "webm", "hls")

# container family per extension, as far as browsers are concerned
_CONTAINER = {".mp4": "mp4", ".m4v": "mp4", ".mov": "mp4", ".webm": "webm"}


@dataclass(frozen=True)
class Plan:
    action: str  # "serve_original" | "needs_transcode" | "hls"
    quality: Optional[int] = None  # target height for transcodes
    format: Optional[str] = None
    ladder: List[Variant] = field(default_factory=list)

    @property
    def serve_original(self) -> bool:
        return self.action == "serve_original"

    @property
    def needs_transcode(self) -> bool:
        return self.action == "needs_transcode"

    @property
    def is_hls(self) -> bool:
        return self.action == "hls"

    @property
    def quality_label(self) -> str:
        return f"{self.quality}p" if self.quality else "original"


def parse_quality(q: Optional[str]) -> Optional[int]:
    """``"720p"``/``"720"`` -> 720; ``auto``/``original``/empty -> None."""
    s = (q or "").strip().lower()
    if s in ("", "auto", "original", "source", "adaptive"):
        return None
    s = s[:-1] if s.endswith("p") else s
    if not s.isdigit() or int(s) <= 0:
        raise ValueError(f"invalid quality {q!r}")
    return int(s)


def parse_format(fmt: Optional[str]) -> str:
    s = (fmt or "auto").strip().lower()
    if s in ("auto", *FORMATS):
        return s
    raise ValueError(f"invalid format {fmt!r}")


def _is_8bit_420(pix: Optional[str]) -> bool:
    return (pix or "yuv420p").lower() in {"yuv420p", "yuvj420p"}


def _h264_browser_safe(profile: Optional[str], pix: Optional[str]) -> bool:
    if not _is_8bit_420(pix):
        return False
    p = (profile or "").lower()
    return not any(x in p for x in ("10", "4:2:2", "4:4:4"))


def is_browser_safe(asset: AssetPath, info: MediaInfo) -> bool:
    container = _CONTAINER.get(asset.suffix)
    v = (info.codec or "").lower()
    a = (info.audio_codec or "").lower()
    if container == "mp4":
        return v == "h264" and (not info.has_audio or a in {"aac", "mp3"}) and _h264_browser_safe(info.profile, info.pix_fmt)
    if container == "webm":
        return v in {"vp8", "vp9"} and (not info.has_audio or a in {"opus", "vorbis"})
    return False


def compute_ladder(info: MediaInfo, levels: Sequence[int], default_bitrate: int = DEFAULT_BITRATE) -> List[Variant]:
    src_h = info.height or DEFAULT_HEIGHT
    src_w = info.width or (src_h * 16 // 9)
    src_b = info.bitrate or default_bitrate

    heights = sorted({h for h in levels if 0 < h <= src_h} | {src_h})
    ladder = []
    for h in heights:
        w = (src_w * h // src_h) // 2 * 2
        ladder.append(Variant(height=h, width=max(2, w), bitrate=src_b * h // src_h))
    return ladder


class RenditionPlanner:
    def __init__(self, quality_levels: Sequence[int], default_bitrate: int = DEFAULT_BITRATE):
        self.quality_levels = list(quality_levels)
        self.default_bitrate = default_bitrate

    def ladder(self, info: MediaInfo) -> List[Variant]:
        return compute_ladder(info, self.quality_levels, self.default_bitrate)

    def plan(self, asset: AssetPath, quality: Optional[int], fmt: str, info: Optional[MediaInfo]) -> Plan:
        if fmt == "hls":
            return Plan("hls", format="hls", ladder=self.ladder(info or MediaInfo()))

        info = info or MediaInfo()
        src_h = info.height or DEFAULT_HEIGHT
        downscale = quality is not None and quality < src_h
        container = _CONTAINER.get(asset.suffix)
        format_ok = fmt == "auto" or fmt == container

        if format_ok and not downscale and is_browser_safe(asset, info):
            return Plan("serve_original", format=container)

        target_fmt = "mp4" if fmt == "auto" else fmt
        target_h = min(quality, src_h) if quality else src_h
        ladder = self.ladder(info)
        log.debug("plan %s: transcode to %sp/%s (codec=%s)", asset.value, target_h, target_fmt, info.codec)
        return Plan("needs_transcode", quality=target_h, format=target_fmt, ladder=ladder)
