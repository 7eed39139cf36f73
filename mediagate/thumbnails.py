# mediagate/thumbnails.py
"""Parameter-addressed thumbnail cache.

Thumbnails are generated inline (images with Pillow, video frames with
ffmpeg) and stored under ``thumbnails/<kind>/<md5>.jpg``. A hit is any
existing file for the key unless the caller asks for ``refresh``.
"""
from __future__ import annotations

import hashlib
import logging
import math
from pathlib import Path
from typing import Optional

from anyio import to_thread
from PIL import Image, ImageOps, UnidentifiedImageError

from .cache import EphemeralCache
from .encoder import FFmpegEncoder
from .errors import EncodeFailure, InvalidPath, UnsupportedType
from .paths import AssetPath
from .probe import FFprobeInspector
from .storage import LocalStorage
from .utils import file_type

log = logging.getLogger("thumbs")

JPEG_QUALITY = 85
MEMO_TTL = 24 * 60 * 60
PLACEHOLDER_RGB = (52, 152, 219)
MIN_CAPTURE = 3


def thumb_key(path: str, width: int, height: int, time: float) -> str:
    return hashlib.md5(f"{path}{width}x{height}_{time}".encode()).hexdigest()


def capture_time(requested: float, duration: Optional[float]) -> float:
    """Move the capture point off the (often black) opening and inside the clip."""
    t = max(0.0, float(requested))
    if not duration or duration <= 0:
        return t
    if t >= duration:
        t = float(max(1, math.floor(duration * 0.2)))
    if t < MIN_CAPTURE and duration > 2 * MIN_CAPTURE:
        t = float(MIN_CAPTURE)
    return t


def _render_image(src: Path, dst: Path, width: int, height: int) -> None:
    with Image.open(src) as img:
        img = ImageOps.exif_transpose(img)
        out = img.convert("RGB")
        # fit inside the box, never enlarge
        out.thumbnail((int(width), int(height)))
        out.save(dst, format="JPEG", quality=JPEG_QUALITY, optimize=True)


def _render_placeholder(dst: Path, width: int, height: int) -> None:
    Image.new("RGB", (int(width), int(height)), PLACEHOLDER_RGB).save(dst, format="JPEG", quality=JPEG_QUALITY)


class ThumbnailCache:
    def __init__(self, storage: LocalStorage, cache: EphemeralCache, inspector: FFprobeInspector,
                 encoder: FFmpegEncoder):
        self.storage = storage
        self.cache = cache
        self.inspector = inspector
        self.encoder = encoder

    def location(self, kind: str, key: str) -> Path:
        return self.storage.scratch("thumbnails", kind, f"{key}.jpg")

    async def get(self, asset: AssetPath, source: Path, *, width: int, height: int,
                  time: float = 5, refresh: bool = False, kind: Optional[str] = None) -> Path:
        if width <= 0 or height <= 0:
            raise UnsupportedType("Thumbnail size must be positive")
        if kind is None:
            kind = "folder" if await self.storage.is_dir(source) else file_type(asset.name)
        if kind not in ("video", "image", "folder"):
            raise UnsupportedType("No thumbnail for this file type")

        key = thumb_key(asset.value, width, height, time)
        final = self.location(kind, key)
        memo = f"thumb:{key}"

        if not refresh:
            if await self.cache.get(memo) and await self.storage.exists(final):
                return final
            if await self.storage.exists(final):
                await self.cache.set(memo, str(final), MEMO_TTL)
                return final

        await self.storage.makedirs(final.parent)
        tmp = self.storage.temp_path_for(final)
        try:
            await self._generate(kind, asset, source, tmp, width, height, time)
            await self.storage.publish(tmp, final)
        finally:
            await self.storage.discard(tmp)
        await self.cache.set(memo, str(final), MEMO_TTL)
        log.debug("thumbnail %s/%s for %s", kind, key, asset.value)
        return final

    async def _generate(self, kind: str, asset: AssetPath, source: Path, dst: Path,
                        width: int, height: int, time: float) -> None:
        if kind == "image":
            try:
                await to_thread.run_sync(_render_image, source, dst, width, height)
            except (UnidentifiedImageError, OSError) as e:
                raise EncodeFailure(f"Could not decode image: {e}") from e
        elif kind == "video":
            info = await self.inspector.probe(source)
            at = capture_time(time, info.duration)
            await self.encoder.extract_frame(source, dst, at, width, height)
            if not await self.storage.exists(dst):
                raise EncodeFailure("No frame extracted")
        else:
            await self._generate_folder(asset, source, dst, width, height, time)

    async def _generate_folder(self, asset: AssetPath, source: Path, dst: Path,
                               width: int, height: int, time: float) -> None:
        entries = await to_thread.run_sync(lambda: list(self.storage.iter_dir(source)))
        for entry in entries:
            kind = file_type(entry.name)
            if kind not in ("video", "image") or not entry.is_file():
                continue
            try:
                await self._generate(kind, asset.child(entry.name), Path(entry.path), dst, width, height, time)
                return
            except (EncodeFailure, InvalidPath) as e:
                log.debug("folder thumbnail: skipping %s (%s)", entry.name, e.message)
        await to_thread.run_sync(_render_placeholder, dst, width, height)
