# tests/test_transcode.py

import asyncio

import pytest

from mediagate.cache import MemoryCache
from mediagate.paths import AssetPath
from mediagate.storage import LocalStorage
from mediagate.transcode import FAILED, PENDING, READY, TranscodeCoordinator
from mediagate.workers import WorkerPool
from tests.fixtures.app import Clock
from tests.fixtures.fakes import HEVC_1080, FakeEncoder

ASSET = AssetPath.parse("movies/film.mkv")


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
async def coord(tmp_path, clock):
    media = tmp_path / "media"
    (media / "movies").mkdir(parents=True)
    (media / "movies" / "film.mkv").write_bytes(b"\x1a\x45\xdf\xa3" * 16)
    pool = WorkerPool(2, name="test")
    c = TranscodeCoordinator(
        MemoryCache(clock=clock), pool, LocalStorage(media, tmp_path / "scratch"), FakeEncoder(),
        claim_ttl=600, failed_ttl=60, eta_seconds=45,
    )
    yield c
    await pool.shutdown()


def _source(c):
    return c.storage.resolve(ASSET)


async def test_concurrent_requests_start_exactly_one_encode(coord):
    coord.encoder.gate = asyncio.Event()

    results = await asyncio.gather(*[
        coord.request_rendition(ASSET, _source(coord), 720, "mp4", info=HEVC_1080) for _ in range(8)
    ])
    assert all(r.status == PENDING for r in results)
    assert sum(r.started for r in results) == 1
    assert len({r.key for r in results}) == 1
    assert all(r.eta and r.eta > 0 for r in results)

    # one more while the encode is running: still pending, nothing new started
    mid = await coord.request_rendition(ASSET, _source(coord), 720, "mp4", info=HEVC_1080)
    assert mid.status == PENDING and not mid.started

    coord.encoder.gate.set()
    await coord.pool.drain()
    assert coord.encoder.transcodes == [("film.mkv", "mp4", 720)]

    done = [await coord.request_rendition(ASSET, _source(coord), 720, "mp4") for _ in range(3)]
    assert all(d.status == READY for d in done)
    assert len({d.location for d in done}) == 1
    assert done[0].location == coord.output_path(results[0].key, "mp4")
    assert done[0].location.read_bytes() == b"RENDITION:mp4:720"
    assert len(coord.encoder.transcodes) == 1


async def test_existing_output_is_served_without_encoding(coord):
    key = coord.job_key(ASSET, 480, "mp4")
    out = coord.output_path(key, "mp4")
    out.parent.mkdir(parents=True)
    out.write_bytes(b"already here")

    st = await coord.request_rendition(ASSET, _source(coord), 480, "mp4")
    assert st.ready and st.location == out
    assert coord.encoder.transcodes == []
    # and the ready flag is now in the cache
    assert (await coord.cache.get(coord.state_key(key)))["state"] == READY


async def test_ready_flag_without_file_rebuilds(coord):
    key = coord.job_key(ASSET, 480, "mp4")
    await coord.cache.set(coord.state_key(key), {"state": READY}, 0)
    st = await coord.request_rendition(ASSET, _source(coord), 480, "mp4")
    assert st.status == PENDING and st.started


async def test_failure_is_reported_then_retried_after_ttl(coord, clock):
    coord.encoder.fail = True
    st = await coord.request_rendition(ASSET, _source(coord), 720, "webm")
    assert st.started
    await coord.pool.drain()

    failed = await coord.request_rendition(ASSET, _source(coord), 720, "webm")
    assert failed.status == FAILED
    assert "ffmpeg" in failed.error
    # no partial output and the claim was released
    assert not coord.output_path(st.key, "webm").exists()
    assert list(coord.output_path(st.key, "webm").parent.iterdir()) == []
    assert await coord.cache.get(coord.claim_key(st.key)) is None

    clock.advance(61)
    coord.encoder.fail = False
    retry = await coord.request_rendition(ASSET, _source(coord), 720, "webm")
    assert retry.status == PENDING and retry.started
    await coord.pool.drain()
    ok = await coord.request_rendition(ASSET, _source(coord), 720, "webm")
    assert ok.ready
    assert ok.location.suffix == ".webm"


async def test_lost_claim_does_not_publish(coord):
    coord.encoder.gate = asyncio.Event()
    st = await coord.request_rendition(ASSET, _source(coord), 360, "mp4")
    await asyncio.sleep(0)

    # claim expires and someone else takes the job over
    await coord.cache.delete(coord.claim_key(st.key))
    await coord.cache.set(coord.claim_key(st.key), {"owner": "someone-else"}, 600)

    coord.encoder.gate.set()
    await coord.pool.drain()
    assert not coord.output_path(st.key, "mp4").exists()
    # the other owner's claim is untouched
    assert (await coord.cache.get(coord.claim_key(st.key)))["owner"] == "someone-else"


async def test_expired_claim_is_reclaimed(coord, clock):
    coord.encoder.gate = asyncio.Event()
    first = await coord.request_rendition(ASSET, _source(coord), 240, "mp4")
    assert first.started

    # the worker "died": its claim and running state both lapse
    clock.advance(601)
    again = await coord.request_rendition(ASSET, _source(coord), 240, "mp4")
    assert again.started

    coord.encoder.gate.set()
    await coord.pool.drain()
    assert len(coord.encoder.transcodes) == 2
    final = await coord.request_rendition(ASSET, _source(coord), 240, "mp4")
    assert final.ready


async def test_progress_is_reported_while_running(coord):
    coord.encoder.gate = asyncio.Event()
    st = await coord.request_rendition(ASSET, _source(coord), 720, "mp4", info=HEVC_1080)
    state = await coord.cache.get(coord.state_key(st.key))
    assert state["state"] == "running"
    assert state["progress"] == 0.0
    coord.encoder.gate.set()
    await coord.pool.drain()
