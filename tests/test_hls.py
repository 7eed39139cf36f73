# tests/test_hls.py

import asyncio

import pytest

from mediagate.cache import MemoryCache
from mediagate.encoder import Variant
from mediagate.hls import MASTER, PREPARING, HLSPreparer, build_master_playlist
from mediagate.paths import AssetPath
from mediagate.planner import RenditionPlanner
from mediagate.storage import LocalStorage
from mediagate.transcode import FAILED, READY
from mediagate.workers import WorkerPool
from tests.fixtures.app import Clock
from tests.fixtures.fakes import FakeEncoder, FakeInspector

ASSET = AssetPath.parse("movies/film.mkv")


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
async def hls(tmp_path, clock):
    media = tmp_path / "media"
    (media / "movies").mkdir(parents=True)
    (media / "movies" / "film.mkv").write_bytes(b"\x00" * 32)
    pool = WorkerPool(1, name="test")
    h = HLSPreparer(
        MemoryCache(clock=clock), pool, LocalStorage(media, tmp_path / "scratch"), FakeEncoder(),
        FakeInspector(), RenditionPlanner([240, 360, 480, 720, 1080]),
        segment_seconds=6, url_prefix="/api/media/hls",
        claim_ttl=600, failed_ttl=30, eta_seconds=90,
    )
    yield h
    await pool.shutdown()


def _src(h):
    return h.storage.resolve(ASSET)


def test_master_playlist_lists_every_rung():
    ladder = [Variant(360, 640, 1_000_000), Variant(720, 1280, 2_500_000)]
    text = build_master_playlist(ladder)
    assert text.startswith("#EXTM3U\n")
    assert '#EXT-X-STREAM-INF:BANDWIDTH=1128000,RESOLUTION=640x360,NAME="360p"\n360p.m3u8' in text
    assert '#EXT-X-STREAM-INF:BANDWIDTH=2628000,RESOLUTION=1280x720,NAME="720p"\n720p.m3u8' in text


async def test_prepare_builds_tree_with_master_last(hls):
    first = await hls.prepare(ASSET, _src(hls))
    assert first.status == PREPARING and first.started
    again = await hls.prepare(ASSET, _src(hls))
    assert again.status == PREPARING and not again.started

    await hls.pool.drain()
    st = await hls.prepare(ASSET, _src(hls))
    assert st.status == READY
    assert st.location.name == MASTER

    out = hls.job_dir(st.key)
    master = (out / MASTER).read_text()
    for h in (240, 360, 480, 720, 1080):
        assert f"{h}p.m3u8" in master
        assert (out / f"{h}p.m3u8").exists()
        assert (out / f"{h}p_00000.ts").exists()
    assert hls.encoder.segments == [("film.mkv", [240, 360, 480, 720, 1080])]
    assert hls.manifest_url(st.key) == f"/api/media/hls/{st.key}/master.m3u8"


async def test_quality_selects_child_playlist(hls):
    await hls.prepare(ASSET, _src(hls))
    await hls.pool.drain()
    st = await hls.prepare(ASSET, _src(hls), 480)
    assert st.location.name == "480p.m3u8"
    # unknown rung falls back to the master
    st = await hls.prepare(ASSET, _src(hls), 2160)
    assert st.location.name == MASTER


async def test_partial_failure_publishes_nothing(hls):
    hls.encoder.fail_heights = {720}
    st = await hls.prepare(ASSET, _src(hls))
    await hls.pool.drain()

    assert not hls.job_dir(st.key).exists()
    failed = await hls.prepare(ASSET, _src(hls))
    assert failed.status == FAILED
    assert "720p" in failed.error
    assert await hls.cache.get(hls.claim_key(st.key)) is None


async def test_failed_job_is_retried_after_ttl(hls, clock):
    hls.encoder.fail_heights = {240}
    await hls.prepare(ASSET, _src(hls))
    await hls.pool.drain()
    assert (await hls.prepare(ASSET, _src(hls))).status == FAILED

    clock.advance(31)
    hls.encoder.fail_heights = set()
    assert (await hls.prepare(ASSET, _src(hls))).started
    await hls.pool.drain()
    assert (await hls.prepare(ASSET, _src(hls))).status == READY


async def test_completed_tree_survives_cache_loss(hls):
    await hls.prepare(ASSET, _src(hls))
    await hls.pool.drain()
    job_id = hls.job_id(ASSET)

    await hls.cache.clear()
    # the sidecar still maps the job back to its asset
    assert await hls.source_path_for(job_id) == ASSET.value

    st = await hls.prepare(ASSET, _src(hls), 360)
    assert st.status == READY
    assert st.location.name == "360p.m3u8"
    assert len(hls.encoder.segments) == 1


async def test_source_path_known_while_running(hls):
    hls.encoder.gate = asyncio.Event()
    st = await hls.prepare(ASSET, _src(hls))
    assert await hls.source_path_for(st.key) == ASSET.value
    assert await hls.source_path_for("0" * 16) is None
    hls.encoder.gate.set()
    await hls.pool.drain()
