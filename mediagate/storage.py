# mediagate/storage.py
"""Blob filesystem: original assets under a media root, renditions under scratch.

Blocking calls are pushed to worker threads with ``anyio.to_thread``. Derived
outputs are written to a temp sibling and renamed into place so readers never
see a partial file.
"""
from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional

from anyio import to_thread

from .errors import InvalidPath, NotFound
from .paths import AssetPath

TEMP_MARKER = ".part-"


def _within(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


class LocalStorage:
    def __init__(self, media_root: Path, scratch_root: Path):
        self.media_root = Path(media_root).resolve()
        self.scratch_root = Path(scratch_root).resolve()

    # ---- originals ----
    def resolve(self, asset: AssetPath) -> Path:
        full = self.media_root.joinpath(*asset.segments)
        # Symlinks may still point outside the root
        real = os.path.realpath(full)
        if not _within(real, str(self.media_root)):
            raise InvalidPath("Path escapes the media root")
        return full

    async def stat(self, path: Path) -> os.stat_result:
        try:
            return await to_thread.run_sync(os.stat, path)
        except FileNotFoundError as e:
            raise NotFound("File not found") from e

    async def exists(self, path: Path) -> bool:
        return await to_thread.run_sync(os.path.exists, path)

    async def is_file(self, path: Path) -> bool:
        return await to_thread.run_sync(os.path.isfile, path)

    async def is_dir(self, path: Path) -> bool:
        return await to_thread.run_sync(os.path.isdir, path)

    def iter_dir(self, path: Path) -> Iterator[os.DirEntry]:
        """Name-sorted entries of one directory level, dotfiles skipped."""
        with os.scandir(path) as it:
            entries = sorted((e for e in it if not e.name.startswith(".")), key=lambda e: e.name.lower())
        yield from entries

    async def open_read(self, path: Path):
        return await to_thread.run_sync(open, path, "rb")

    async def iter_open(self, f, start: int, length: int, chunk: int) -> AsyncIterator[bytes]:
        """Sequential read of `length` bytes from `start`; closes `f` on exit or cancel."""
        try:
            await to_thread.run_sync(f.seek, start)
            remaining = length
            while remaining > 0:
                data = await to_thread.run_sync(f.read, min(chunk, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data
        finally:
            f.close()

    # ---- scratch ----
    def scratch(self, *parts: str) -> Path:
        return self.scratch_root.joinpath(*parts)

    async def makedirs(self, path: Path) -> None:
        await to_thread.run_sync(lambda: os.makedirs(path, exist_ok=True))

    @staticmethod
    def temp_path_for(final: Path) -> Path:
        return final.with_name(f"{final.stem}{TEMP_MARKER}{uuid.uuid4().hex[:8]}{final.suffix}")

    async def publish(self, temp: Path, final: Path) -> Path:
        await to_thread.run_sync(os.replace, temp, final)
        return final

    async def write_atomic(self, final: Path, data: bytes) -> Path:
        await self.makedirs(final.parent)
        tmp = self.temp_path_for(final)

        def _write() -> None:
            with open(tmp, "wb") as f:
                f.write(data)

        try:
            await to_thread.run_sync(_write)
            return await self.publish(tmp, final)
        finally:
            await self.discard(tmp)

    async def discard(self, path: Optional[Path]) -> None:
        if path is None:
            return

        def _rm() -> None:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

        await to_thread.run_sync(_rm)

    async def remove_tree(self, path: Path) -> None:
        await to_thread.run_sync(shutil.rmtree, path, True)
