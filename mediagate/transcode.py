# mediagate/transcode.py
"""Single-output rendition jobs.

Job state lives in the ephemeral cache, never in process memory:

* ``transcode:claim:<key>`` - set-if-absent ownership record with a TTL. A
  worker that dies leaves the claim to expire, after which the next request
  re-claims the job.
* ``transcode:state:<key>`` - ``running`` (with progress), ``ready`` (no
  TTL) or ``failed`` (short TTL, then the job is retried).

Encodes run on a bounded :class:`~mediagate.workers.WorkerPool`, write to a
temp file and are renamed into ``transcoded/<key><ext>`` on success.
"""
from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .cache import EphemeralCache
from .encoder import FFmpegEncoder, OutputSpec
from .errors import EncodeFailure, JobAbandoned
from .paths import AssetPath
from .probe import MediaInfo
from .storage import LocalStorage
from .workers import WorkerPool

log = logging.getLogger("transcode")

READY = "ready"
RUNNING = "running"
FAILED = "failed"
PENDING = "pending"


def make_job_key(*parts: Any) -> str:
    h = hashlib.sha1()
    h.update("|".join(str(p) for p in parts).encode())
    return h.hexdigest()[:16]


@dataclass
class JobStatus:
    status: str  # ready | pending | failed
    key: str
    location: Optional[Path] = None
    eta: Optional[int] = None
    started: bool = False
    progress: Optional[float] = None
    error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status == READY

    @property
    def failed(self) -> bool:
        return self.status == FAILED


class ClaimedJobs:
    """Claim/poll protocol shared by the rendition and HLS coordinators."""

    namespace = "job"

    def __init__(self, cache: EphemeralCache, pool: WorkerPool, *,
                 claim_ttl: int = 3600, failed_ttl: int = 60, eta_seconds: int = 60):
        self.cache = cache
        self.pool = pool
        self.claim_ttl = claim_ttl
        self.failed_ttl = failed_ttl
        self.eta_seconds = eta_seconds

    def claim_key(self, key: str) -> str:
        return f"{self.namespace}:claim:{key}"

    def state_key(self, key: str) -> str:
        return f"{self.namespace}:state:{key}"

    async def _try_claim(self, key: str, extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        record = {"owner": uuid.uuid4().hex, "started_at": time.time()}
        if extra:
            record.update(extra)
        if await self.cache.set_if_absent(self.claim_key(key), record, self.claim_ttl):
            return record
        return None

    async def _assert_owner(self, key: str, record: Dict[str, Any]) -> None:
        current = await self.cache.get(self.claim_key(key))
        if not current or current.get("owner") != record["owner"]:
            raise JobAbandoned(key)

    async def _release(self, key: str, record: Dict[str, Any]) -> None:
        await self.cache.delete_if_equals(self.claim_key(key), record)

    async def _mark_running(self, key: str, record: Dict[str, Any], **fields: Any) -> None:
        state = {"state": RUNNING, "started_at": record["started_at"], "progress": 0.0, **fields}
        await self.cache.set(self.state_key(key), state, self.claim_ttl)

    async def _mark_ready(self, key: str, **fields: Any) -> None:
        await self.cache.set(self.state_key(key), {"state": READY, **fields}, 0)

    async def _mark_failed(self, key: str, error: str, **fields: Any) -> None:
        await self.cache.set(self.state_key(key), {"state": FAILED, "error": error, **fields}, self.failed_ttl)

    def _progress_reporter(self, key: str, record: Dict[str, Any], **fields: Any):
        last = {"p": 0.0}

        async def report(frac: float) -> None:
            if frac - last["p"] < 0.01 and frac < 1.0:
                return
            last["p"] = frac
            state = {"state": RUNNING, "started_at": record["started_at"], "progress": round(frac, 3), **fields}
            await self.cache.set(self.state_key(key), state, self.claim_ttl)

        return report

    def _eta(self, state: Optional[Dict[str, Any]]) -> int:
        if not state or not state.get("started_at"):
            return self.eta_seconds
        elapsed = max(0.0, time.time() - float(state["started_at"]))
        p = float(state.get("progress") or 0.0)
        if p >= 0.05:
            return max(1, int(elapsed * (1.0 - p) / p))
        return max(1, int(self.eta_seconds - elapsed))

    async def _pending(self, key: str, started: bool) -> JobStatus:
        state = await self.cache.get(self.state_key(key))
        running = state if state and state.get("state") == RUNNING else None
        return JobStatus(
            PENDING, key,
            eta=self._eta(running),
            started=started,
            progress=(running or {}).get("progress", 0.0),
        )


class TranscodeCoordinator(ClaimedJobs):
    namespace = "transcode"

    def __init__(self, cache: EphemeralCache, pool: WorkerPool, storage: LocalStorage,
                 encoder: FFmpegEncoder, **kw: Any):
        super().__init__(cache, pool, **kw)
        self.storage = storage
        self.encoder = encoder

    def job_key(self, asset: AssetPath, quality: Optional[int], fmt: str) -> str:
        return make_job_key(asset.value, quality or "original", fmt)

    def output_path(self, key: str, fmt: str) -> Path:
        return self.storage.scratch("transcoded", f"{key}{OutputSpec(fmt).extension}")

    async def request_rendition(
        self,
        asset: AssetPath,
        source: Path,
        quality: Optional[int],
        fmt: str,
        *,
        bitrate: Optional[int] = None,
        info: Optional[MediaInfo] = None,
    ) -> JobStatus:
        key = self.job_key(asset, quality, fmt)
        final = self.output_path(key, fmt)

        state = await self.cache.get(self.state_key(key))
        if state and state.get("state") == READY:
            if await self.storage.exists(final):
                return JobStatus(READY, key, location=final)
            log.info("rendition %s flagged ready but output is gone; rebuilding", key)
            await self.cache.delete(self.state_key(key))
        elif state and state.get("state") == FAILED:
            return JobStatus(FAILED, key, error=state.get("error"))
        elif state is None and await self.storage.exists(final):
            await self._mark_ready(key, location=str(final))
            return JobStatus(READY, key, location=final)

        record = await self._try_claim(key, {"path": asset.value})
        if record is None:
            return await self._pending(key, started=False)

        # Another worker may have finished between the state read and the claim
        if await self.storage.exists(final):
            await self._mark_ready(key, location=str(final))
            await self._release(key, record)
            return JobStatus(READY, key, location=final)

        if state and state.get("state") == RUNNING:
            log.info("rendition %s: previous claim expired, reclaiming", key)

        spec = OutputSpec(format=fmt, height=quality, bitrate=bitrate)
        await self._mark_running(key, record)
        duration = info.duration if info else None
        self.pool.submit(key, lambda: self._run(key, record, source, final, spec, duration))
        log.info("rendition %s started for %s (%s/%s)", key, asset.value, spec.height or "source", fmt)
        return JobStatus(PENDING, key, eta=self.eta_seconds, started=True, progress=0.0)

    async def _run(self, key: str, record: Dict[str, Any], source: Path, final: Path,
                   spec: OutputSpec, duration: Optional[float]) -> None:
        tmp = self.storage.temp_path_for(final)
        started = time.time()
        try:
            await self.storage.makedirs(final.parent)
            await self.encoder.transcode(source, tmp, spec, self._progress_reporter(key, record), duration)
            await self._assert_owner(key, record)
            await self.storage.publish(tmp, final)
            await self._mark_ready(key, location=str(final))
            log.info("rendition %s ready in %.1fs -> %s", key, time.time() - started, final.name)
        except JobAbandoned:
            log.info("rendition %s: claim lost before publish, leaving it to the new owner", key)
        except EncodeFailure as e:
            log.warning("rendition %s failed: %s", key, e.message)
            await self._mark_failed(key, e.message)
        except OSError as e:
            log.warning("rendition %s could not be published: %s", key, e)
            await self._mark_failed(key, "Could not write rendition")
        finally:
            await self.storage.discard(tmp)
            await self._release(key, record)
