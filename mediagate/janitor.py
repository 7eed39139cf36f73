# mediagate/janitor.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Optional

from anyio import to_thread
from redis.exceptions import RedisError

from .cache import EphemeralCache, MemoryCache
from .errors import StoreUnavailable
from .hls import MASTER, HLSPreparer
from .storage import TEMP_MARKER, LocalStorage
from .store import MetadataStore

log = logging.getLogger("janitor")


def _sweep_files(root: Path, max_age: float, now: float) -> int:
    """Delete stale temp files and encoder logs under root."""
    removed = 0
    if not root.exists():
        return 0
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            if TEMP_MARKER not in name and not name.endswith(".log"):
                continue
            p = os.path.join(dirpath, name)
            try:
                if now - os.stat(p).st_mtime > max_age:
                    os.unlink(p)
                    removed += 1
            except FileNotFoundError:
                continue
    return removed


class Janitor:
    """Periodic scratch cleanup: partial outputs, unfinished HLS trees, expired shares."""

    def __init__(self, storage: LocalStorage, store: MetadataStore, cache: EphemeralCache,
                 hls: HLSPreparer, *, max_age: int = 6 * 3600, interval: int = 300):
        self.storage = storage
        self.store = store
        self.cache = cache
        self.hls = hls
        self.max_age = max_age
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[float] = None) -> dict:
        now = now or time.time()
        stats = {"files": 0, "hls_dirs": 0, "shares": 0, "cache": 0}

        for sub in ("transcoded", "thumbnails"):
            stats["files"] += await to_thread.run_sync(_sweep_files, self.storage.scratch(sub), self.max_age, now)

        hls_root = self.storage.scratch("hls")
        if hls_root.exists():
            for d in hls_root.iterdir():
                if not d.is_dir() or (d / MASTER).exists():
                    continue
                if await self.cache.get(self.hls.claim_key(d.name)):
                    continue
                try:
                    age = now - d.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self.max_age:
                    await to_thread.run_sync(shutil.rmtree, d, True)
                    stats["hls_dirs"] += 1

        try:
            stats["shares"] = await self.store.purge_expired_shares()
        except StoreUnavailable:
            log.warning("share purge skipped: metadata store unavailable")

        if isinstance(self.cache, MemoryCache):
            stats["cache"] = self.cache.purge_expired()

        if any(stats.values()):
            log.info("sweep removed %s", stats)
        return stats

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep()
            except (OSError, RedisError) as e:
                log.warning("sweep failed: %s", e)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="janitor")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
