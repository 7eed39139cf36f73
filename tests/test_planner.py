# tests/test_planner.py

from dataclasses import replace

import pytest

from mediagate.paths import AssetPath
from mediagate.planner import (
    RenditionPlanner,
    compute_ladder,
    is_browser_safe,
    parse_format,
    parse_quality,
)
from mediagate.probe import MediaInfo, parse_ffprobe
from tests.fixtures.fakes import H264_720, HEVC_1080

LEVELS = [240, 360, 480, 720, 1080]


@pytest.fixture()
def planner():
    return RenditionPlanner(LEVELS, 5_000_000)


def test_hevc_mkv_gets_full_ladder_and_a_transcode(planner):
    asset = AssetPath.parse("movies/film.mkv")
    assert [v.height for v in planner.ladder(HEVC_1080)] == [240, 360, 480, 720, 1080]

    plan = planner.plan(asset, None, "auto", HEVC_1080)
    assert plan.needs_transcode
    assert plan.format == "mp4"
    assert plan.quality == 1080


def test_browser_safe_mp4_is_served_as_is(planner):
    plan = planner.plan(AssetPath.parse("clip.mp4"), None, "auto", H264_720)
    assert plan.serve_original


def test_downscale_request_forces_transcode(planner):
    plan = planner.plan(AssetPath.parse("clip.mp4"), 480, "auto", H264_720)
    assert plan.needs_transcode
    assert plan.quality == 480
    assert plan.quality_label == "480p"


def test_upscale_request_is_clamped_to_source(planner):
    assert planner.plan(AssetPath.parse("clip.mp4"), 2160, "auto", H264_720).serve_original
    plan = planner.plan(AssetPath.parse("film.mkv"), 2160, "mp4", HEVC_1080)
    assert plan.quality == 1080


def test_explicit_format_mismatch_transcodes(planner):
    plan = planner.plan(AssetPath.parse("clip.mp4"), None, "webm", H264_720)
    assert plan.needs_transcode
    assert plan.format == "webm"


def test_hls_plan_carries_ladder(planner):
    plan = planner.plan(AssetPath.parse("film.mkv"), None, "hls", HEVC_1080)
    assert plan.is_hls
    assert [v.height for v in plan.ladder] == LEVELS


def test_ladder_includes_odd_source_height_and_stays_monotonic():
    info = MediaInfo(width=1600, height=900, bitrate=4_500_000, codec="h264")
    ladder = compute_ladder(info, LEVELS)
    assert [v.height for v in ladder] == [240, 360, 480, 720, 900]
    assert [v.bitrate for v in ladder] == sorted(v.bitrate for v in ladder)
    assert ladder[-1].bitrate == 4_500_000
    assert all(v.width % 2 == 0 for v in ladder)
    assert ladder[-1].width == 1600


def test_ladder_defaults_when_probe_is_empty():
    ladder = compute_ladder(MediaInfo(), LEVELS, 5_000_000)
    assert ladder[-1].height == 1080
    assert ladder[-1].bitrate == 5_000_000


@pytest.mark.parametrize("info, name, safe", [
    (H264_720, "a.mp4", True),
    (H264_720, "a.mkv", False),
    (replace(H264_720, pix_fmt="yuv420p10le"), "a.mp4", False),
    (replace(H264_720, profile="High 10"), "a.mp4", False),
    (replace(H264_720, audio_codec="ac3"), "a.mp4", False),
    (HEVC_1080, "a.mp4", False),
    (MediaInfo(codec="vp9", audio_codec="opus", has_audio=True), "a.webm", True),
    (MediaInfo(codec="vp9", audio_codec="aac", has_audio=True), "a.webm", False),
])
def test_is_browser_safe(info, name, safe):
    assert is_browser_safe(AssetPath.parse(name), info) is safe


def test_parse_quality_and_format():
    assert parse_quality("720p") == 720
    assert parse_quality("480") == 480
    assert parse_quality("auto") is None
    assert parse_quality(None) is None
    assert parse_format(None) == "auto"
    assert parse_format("HLS") == "hls"
    with pytest.raises(ValueError):
        parse_quality("hd")
    with pytest.raises(ValueError):
        parse_format("avi")


def test_parse_ffprobe_skips_cover_art():
    data = {
        "streams": [
            {"codec_type": "video", "codec_name": "mjpeg", "disposition": {"attached_pic": 1}},
            {"codec_type": "video", "codec_name": "H264", "width": 1920, "height": 1080,
             "pix_fmt": "yuv420p", "profile": "High", "bit_rate": "N/A"},
            {"codec_type": "audio", "codec_name": "aac"},
        ],
        "format": {"duration": "12.5", "bit_rate": "6000000", "format_name": "mov,mp4"},
    }
    info = parse_ffprobe(data)
    assert info.codec == "h264"
    assert (info.width, info.height) == (1920, 1080)
    assert info.bitrate == 6_000_000
    assert info.duration == 12.5
    assert info.has_audio and info.audio_codec == "aac"
