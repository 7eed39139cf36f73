# mediagate/hls.py
from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from anyio import to_thread

from .cache import EphemeralCache
from .encoder import FFmpegEncoder, Variant
from .errors import EncodeFailure, JobAbandoned
from .paths import AssetPath
from .planner import RenditionPlanner
from .probe import FFprobeInspector
from .storage import LocalStorage
from .transcode import FAILED, READY, ClaimedJobs, JobStatus, make_job_key
from .workers import WorkerPool

log = logging.getLogger("hls")

MASTER = "master.m3u8"
SIDECAR = "job.json"
AUDIO_BANDWIDTH = 128_000

JOB_ID_RE = re.compile(r"^[0-9a-f]{16}$")
FILE_RE = re.compile(r"^(master|\d{2,4}p)\.m3u8$|^\d{2,4}p_\d{5}\.ts$")

PREPARING = "preparing"


def build_master_playlist(ladder: Sequence[Variant]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for v in ladder:
        lines.append(
            f'#EXT-X-STREAM-INF:BANDWIDTH={v.bitrate + AUDIO_BANDWIDTH},'
            f'RESOLUTION={v.width}x{v.height},NAME="{v.label}"'
        )
        lines.append(f"{v.label}.m3u8")
    return "\n".join(lines) + "\n"


class HLSPreparer(ClaimedJobs):
    """Builds ``hls/<jobId>/`` with one child playlist per ladder rung.

    The master playlist is written last and only after every rung encoded, so
    its presence means the whole tree is complete. A failed rung removes the
    tree and marks the job failed.
    """

    namespace = "hls"

    def __init__(self, cache: EphemeralCache, pool: WorkerPool, storage: LocalStorage,
                 encoder: FFmpegEncoder, inspector: FFprobeInspector, planner: RenditionPlanner,
                 *, segment_seconds: int = 6, url_prefix: str = "/api/media/hls", **kw: Any):
        super().__init__(cache, pool, **kw)
        self.storage = storage
        self.encoder = encoder
        self.inspector = inspector
        self.planner = planner
        self.segment_seconds = segment_seconds
        self.url_prefix = url_prefix.rstrip("/")

    def job_id(self, asset: AssetPath) -> str:
        return make_job_key("hls", asset.value)

    def job_dir(self, job_id: str) -> Path:
        return self.storage.scratch("hls", job_id)

    def manifest_url(self, job_id: str, name: str = MASTER) -> str:
        return f"{self.url_prefix}/{job_id}/{name}"

    async def prepare(self, asset: AssetPath, source: Path, quality: Optional[int] = None) -> JobStatus:
        job_id = self.job_id(asset)
        out_dir = self.job_dir(job_id)
        master = out_dir / MASTER

        state = await self.cache.get(self.state_key(job_id))
        if state and state.get("state") == READY:
            if await self.storage.exists(master):
                return self._ready(job_id, state, quality)
            await self.cache.delete(self.state_key(job_id))
        elif state and state.get("state") == FAILED:
            return JobStatus(FAILED, job_id, error=state.get("error"))
        elif state is None and await self.storage.exists(master):
            state = await self._restore_ready(job_id, out_dir, asset)
            return self._ready(job_id, state, quality)

        record = await self._try_claim(job_id, {"path": asset.value})
        if record is None:
            st = await self._pending(job_id, started=False)
            st.status = PREPARING
            return st

        if await self.storage.exists(master):
            await self._release(job_id, record)
            state = await self._restore_ready(job_id, out_dir, asset)
            return self._ready(job_id, state, quality)

        await self._mark_running(job_id, record, path=asset.value)
        self.pool.submit(job_id, lambda: self._build(job_id, record, asset, source))
        log.info("hls %s started for %s", job_id, asset.value)
        return JobStatus(PREPARING, job_id, eta=self.eta_seconds, started=True, progress=0.0)

    def _ready(self, job_id: str, state: Dict[str, Any], quality: Optional[int]) -> JobStatus:
        name = MASTER
        if quality and quality in (state.get("heights") or []):
            name = f"{quality}p.m3u8"
        return JobStatus(READY, job_id, location=self.job_dir(job_id) / name)

    async def _restore_ready(self, job_id: str, out_dir: Path, asset: AssetPath) -> Dict[str, Any]:
        heights = await to_thread.run_sync(_heights_on_disk, out_dir)
        state = {"path": asset.value, "heights": heights}
        await self._mark_ready(job_id, **state)
        return {"state": READY, **state}

    async def _build(self, job_id: str, record: Dict[str, Any], asset: AssetPath, source: Path) -> None:
        out_dir = self.job_dir(job_id)
        started = time.time()
        try:
            info = await self.inspector.probe(source)
            ladder = self.planner.ladder(info)
            # leftovers from an abandoned run
            await self.storage.remove_tree(out_dir)
            await self.storage.makedirs(out_dir)
            await self.storage.write_atomic(out_dir / SIDECAR, json.dumps({"path": asset.value}).encode())

            manifests = await self.encoder.segment(
                source, ladder, out_dir, self.segment_seconds,
                self._progress_reporter(job_id, record, path=asset.value), info.duration,
            )
            for v in ladder:
                child = manifests.get(v.height)
                if child is None or not await self.storage.exists(child):
                    raise EncodeFailure(f"variant {v.label} produced no playlist")

            await self._assert_owner(job_id, record)
            await self.storage.write_atomic(out_dir / MASTER, build_master_playlist(ladder).encode())
            await self._mark_ready(job_id, path=asset.value, heights=[v.height for v in ladder])
            log.info("hls %s ready in %.1fs (%s)", job_id, time.time() - started,
                     ",".join(v.label for v in ladder))
        except JobAbandoned:
            log.info("hls %s: claim lost before publish, leaving it to the new owner", job_id)
        except (EncodeFailure, OSError) as e:
            msg = e.message if isinstance(e, EncodeFailure) else "Could not write HLS output"
            log.warning("hls %s failed: %s", job_id, msg)
            await self.storage.remove_tree(out_dir)
            await self._mark_failed(job_id, msg, path=asset.value)
        finally:
            await self._release(job_id, record)

    async def source_path_for(self, job_id: str) -> Optional[str]:
        """Asset path a job was built from, from job state or the on-disk sidecar."""
        state = await self.cache.get(self.state_key(job_id))
        if state and state.get("path"):
            return state["path"]
        claim = await self.cache.get(self.claim_key(job_id))
        if claim and claim.get("path"):
            return claim["path"]
        return await to_thread.run_sync(_read_sidecar, self.job_dir(job_id) / SIDECAR)


def _heights_on_disk(out_dir: Path) -> List[int]:
    out = []
    for p in out_dir.glob("*p.m3u8"):
        stem = p.stem[:-1]
        if stem.isdigit():
            out.append(int(stem))
    return sorted(out)


def _read_sidecar(path: Path) -> Optional[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f).get("path")
    except (OSError, ValueError):
        return None
