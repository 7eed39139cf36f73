# mediagate/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .access import AccessResolver
from .cache import EphemeralCache, RedisCache, build_cache
from .config import Settings
from .database import get_sessionmaker
from .encoder import FFmpegEncoder
from .hls import HLSPreparer
from .janitor import Janitor
from .planner import RenditionPlanner
from .probe import FFprobeInspector
from .ranges import RangeResponder
from .sharing import ShareIssuer
from .storage import LocalStorage
from .store import MetadataStore
from .thumbnails import ThumbnailCache
from .transcode import TranscodeCoordinator
from .workers import WorkerPool

log = logging.getLogger("services")


@dataclass
class Services:
    settings: Settings
    cache: EphemeralCache
    storage: LocalStorage
    store: MetadataStore
    access: AccessResolver
    shares: ShareIssuer
    inspector: FFprobeInspector
    encoder: FFmpegEncoder
    planner: RenditionPlanner
    pool: WorkerPool
    transcoder: TranscodeCoordinator
    hls: HLSPreparer
    responder: RangeResponder
    thumbnails: ThumbnailCache
    janitor: Janitor

    async def start(self) -> None:
        if isinstance(self.cache, RedisCache):
            await self.cache.connect()
        for sub in ("transcoded", "hls", "thumbnails"):
            await self.storage.makedirs(self.storage.scratch(sub))
        self.janitor.start()
        log.info("media root=%s scratch=%s cache=%s workers=%s", self.storage.media_root,
                 self.storage.scratch_root, type(self.cache).__name__, self.pool.size)

    async def stop(self) -> None:
        await self.janitor.stop()
        await self.pool.shutdown()
        await self.cache.close()


def build_services(
    settings: Settings,
    *,
    sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None,
    cache: Optional[EphemeralCache] = None,
    inspector: Optional[FFprobeInspector] = None,
    encoder: Optional[FFmpegEncoder] = None,
) -> Services:
    cache = cache or build_cache(settings.CACHE_BACKEND, settings.REDIS_URL)
    storage = LocalStorage(settings.media_root(), settings.scratch_dir())
    store = MetadataStore(sessionmaker or get_sessionmaker())
    inspector = inspector or FFprobeInspector(settings.FFPROBE_PATH, settings.FFPROBE_TIMEOUT)
    encoder = encoder or FFmpegEncoder(settings.FFMPEG_PATH, settings.FFMPEG_PRESET, settings.FFMPEG_THREADS)
    planner = RenditionPlanner(settings.quality_levels(), settings.DEFAULT_BITRATE)
    pool = WorkerPool(settings.TRANSCODE_WORKERS, name="encode")

    job_kw = dict(claim_ttl=settings.CLAIM_TTL_SECONDS, failed_ttl=settings.FAILED_TTL_SECONDS)
    transcoder = TranscodeCoordinator(cache, pool, storage, encoder,
                                      eta_seconds=settings.TRANSCODE_ETA_SECONDS, **job_kw)
    hls = HLSPreparer(cache, pool, storage, encoder, inspector, planner,
                      segment_seconds=settings.HLS_SEGMENT_SECONDS,
                      url_prefix=f"{settings.API_PREFIX.rstrip('/')}/media/hls",
                      eta_seconds=settings.HLS_ETA_SECONDS, **job_kw)

    return Services(
        settings=settings,
        cache=cache,
        storage=storage,
        store=store,
        access=AccessResolver(store, open_by_default=settings.ACCESS_OPEN_BY_DEFAULT, production=settings.is_prod),
        shares=ShareIssuer(store, settings.SHARE_DEFAULT_EXPIRES),
        inspector=inspector,
        encoder=encoder,
        planner=planner,
        pool=pool,
        transcoder=transcoder,
        hls=hls,
        responder=RangeResponder(storage, settings.STREAM_MAX_CHUNK, settings.STREAM_READ_CHUNK),
        thumbnails=ThumbnailCache(storage, cache, inspector, encoder),
        janitor=Janitor(storage, store, cache, hls,
                        max_age=settings.SCRATCH_MAX_AGE_SECONDS,
                        interval=settings.JANITOR_INTERVAL_SECONDS),
    )
