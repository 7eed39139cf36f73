# tests/test_encoder.py

import asyncio
import os
import shutil
from pathlib import Path

import pytest

from mediagate.encoder import FFmpegEncoder, OutputSpec, Variant
from mediagate.errors import EncodeFailure

needs_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


@pytest.fixture()
def encoder():
    return FFmpegEncoder("ffmpeg", preset="veryfast", threads=3)


def _after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


# ─────────────────────────────────────────────────────────────
# Argument builders
# ─────────────────────────────────────────────────────────────

def test_mp4_transcode_args(encoder):
    cmd = encoder.transcode_args(Path("/m/in.mkv"), Path("/s/out.mp4"), OutputSpec("mp4", 720, 2_500_000))
    assert cmd[0] == "ffmpeg"
    assert _after(cmd, "-i") == "/m/in.mkv"
    assert _after(cmd, "-vf") == "scale=-2:720"
    assert _after(cmd, "-c:v") == "libx264"
    assert _after(cmd, "-preset") == "veryfast"
    assert _after(cmd, "-pix_fmt") == "yuv420p"
    assert _after(cmd, "-threads") == "3"
    assert _after(cmd, "-b:v") == "2500k"
    assert _after(cmd, "-bufsize") == "5000k"
    assert _after(cmd, "-c:a") == "aac"
    assert _after(cmd, "-movflags") == "+faststart"
    assert _after(cmd, "-f") == "mp4"
    assert _after(cmd, "-progress") == "pipe:1"
    assert cmd[-1] == "/s/out.mp4"


def test_webm_transcode_args(encoder):
    cmd = encoder.transcode_args(Path("in.mkv"), Path("out.webm"), OutputSpec("webm"))
    assert _after(cmd, "-c:v") == "libvpx-vp9"
    assert _after(cmd, "-c:a") == "libopus"
    assert _after(cmd, "-f") == "webm"
    assert "-vf" not in cmd
    assert "-b:v" not in cmd
    assert "-movflags" not in cmd


def test_segment_args_name_segments_per_rung(encoder, tmp_path):
    cmd = encoder.segment_args(Path("in.mkv"), Variant(720, 1280, 2_800_000), tmp_path, 4)
    assert _after(cmd, "-f") == "hls"
    assert _after(cmd, "-hls_time") == "4"
    assert _after(cmd, "-hls_playlist_type") == "vod"
    assert _after(cmd, "-hls_segment_filename") == str(tmp_path / "720p_%05d.ts")
    assert _after(cmd, "-vf") == "scale=1280:720"
    assert _after(cmd, "-g") == "96"
    assert _after(cmd, "-force_key_frames") == "expr:gte(t,n_forced*4)"
    assert cmd[-1] == str(tmp_path / "720p.m3u8")


def test_frame_args(encoder):
    cmd = encoder.frame_args(Path("in.mkv"), Path("t.jpg"), -3, 320, 180)
    assert _after(cmd, "-ss") == "0.000"
    assert cmd.index("-ss") < cmd.index("-i")
    assert _after(cmd, "-frames:v") == "1"
    assert _after(cmd, "-vf") == "scale=320:180:force_original_aspect_ratio=decrease"
    assert cmd[-1] == "t.jpg"


# ─────────────────────────────────────────────────────────────
# Progress parsing
# ─────────────────────────────────────────────────────────────

class _Stdout:
    def __init__(self, lines):
        self._lines = [line.encode() + b"\n" for line in lines]

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for line in self._lines:
            yield line


class _Proc:
    def __init__(self, lines):
        self.stdout = _Stdout(lines)


async def test_pump_progress_reports_fractions():
    seen = []
    lines = ["frame=1", "out_time_us=2500000", "out_time_ms=bogus", "out_time_ms=5000000",
             "out_time_us=99000000", "progress=end"]
    await FFmpegEncoder._pump_progress(_Proc(lines), seen.append, 10.0)
    assert seen == [0.25, 0.5, 1.0]


async def test_pump_progress_awaits_async_callbacks():
    seen = []

    async def report(frac):
        seen.append(frac)

    await FFmpegEncoder._pump_progress(_Proc(["out_time_us=1000000"]), report, 4.0)
    assert seen == [0.25]


async def test_pump_progress_needs_a_duration():
    seen = []
    await FFmpegEncoder._pump_progress(_Proc(["out_time_us=1000000"]), seen.append, None)
    assert seen == []


# ─────────────────────────────────────────────────────────────
# Process plumbing (sh stands in for ffmpeg)
# ─────────────────────────────────────────────────────────────

def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _read_pid(path: Path) -> int:
    for _ in range(500):
        if path.exists() and path.read_text().strip():
            return int(path.read_text())
        await asyncio.sleep(0.01)
    raise AssertionError("child never wrote its pid")


@needs_sh
async def test_run_reports_progress_and_drops_log_on_success(encoder, tmp_path):
    seen = []
    log_path = tmp_path / "ok.log"
    script = "echo out_time_us=500000; echo out_time_us=1000000; echo done >&2"
    await encoder._run(["sh", "-c", script], log_path, seen.append, 2.0)
    assert seen == [0.25, 0.5]
    assert not log_path.exists()


@needs_sh
async def test_run_raises_on_non_zero_exit_and_keeps_log(encoder, tmp_path):
    log_path = tmp_path / "bad.log"
    with pytest.raises(EncodeFailure) as ei:
        await encoder._run(["sh", "-c", "echo broken input >&2; exit 3"], log_path)
    assert "code 3" in ei.value.message
    assert "broken input" in log_path.read_text()


async def test_run_missing_binary(tmp_path):
    enc = FFmpegEncoder(str(tmp_path / "no-such-ffmpeg"))
    with pytest.raises(EncodeFailure):
        await enc.extract_frame(tmp_path / "in.mkv", tmp_path / "out.jpg", 1, 32, 32)


@needs_sh
async def test_child_is_killed_when_progress_callback_fails(encoder, tmp_path):
    pid_file = tmp_path / "pid"

    def explode(frac):
        raise RuntimeError("cache down")

    script = f"echo $$ > {pid_file}; echo out_time_us=1000000; exec sleep 30"
    with pytest.raises(RuntimeError):
        await encoder._run(["sh", "-c", script], tmp_path / "x.log", explode, 10.0)
    assert not _alive(int(pid_file.read_text()))


@needs_sh
async def test_child_is_killed_on_cancel(encoder, tmp_path):
    pid_file = tmp_path / "pid"
    script = f"echo $$ > {pid_file}; exec sleep 30"
    task = asyncio.create_task(encoder._run(["sh", "-c", script], tmp_path / "x.log"))
    pid = await _read_pid(pid_file)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not _alive(pid)
