# mediagate/encoder.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
from dataclasses import dataclass
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

from anyio import to_thread

from .errors import EncodeFailure

log = logging.getLogger("encoder")

ProgressFn = Callable[[float], Union[None, Awaitable[Any]]]

_LOG_TAIL = 2000


@dataclass(frozen=True)
class Variant:
    height: int
    width: int
    bitrate: int  # video bits per second

    @property
    def label(self) -> str:
        return f"{self.height}p"


@dataclass(frozen=True)
class OutputSpec:
    format: str  # "mp4" | "webm"
    height: Optional[int] = None
    bitrate: Optional[int] = None

    @property
    def extension(self) -> str:
        return ".webm" if self.format == "webm" else ".mp4"


def _kbps(bps: int) -> str:
    return f"{max(1, int(bps) // 1000)}k"


class FFmpegEncoder:
    """Runs ffmpeg as a subprocess. Every method raises EncodeFailure on a non-zero exit."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", preset: str = "fast", threads: int = 2):
        self.ffmpeg_path = ffmpeg_path
        self.preset = preset
        self.threads = threads

    # -------------------------------------------------------------------------
    # Argument builders
    # -------------------------------------------------------------------------
    def _h264_args(self, gop: Optional[int] = None, seg_dur: Optional[float] = None) -> list[str]:
        args = [
            "-c:v", "libx264",
            "-preset", self.preset,
            "-profile:v", "main", "-pix_fmt", "yuv420p",
            "-threads", str(self.threads),
        ]
        if gop:
            args += ["-g", str(gop), "-keyint_min", str(gop), "-sc_threshold", "0"]
        if seg_dur:
            args += ["-force_key_frames", f"expr:gte(t,n_forced*{seg_dur})"]
        return args

    @staticmethod
    def _rate_args(bitrate: Optional[int]) -> list[str]:
        if not bitrate:
            return []
        return ["-b:v", _kbps(bitrate), "-maxrate", _kbps(bitrate), "-bufsize", _kbps(bitrate * 2)]

    def transcode_args(self, src: Path, dst: Path, spec: OutputSpec) -> list[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-i", str(src),
               "-map", "0:v:0", "-map", "0:a:0?", "-sn", "-dn"]
        if spec.height:
            cmd += ["-vf", f"scale=-2:{int(spec.height)}"]
        if spec.format == "webm":
            cmd += ["-c:v", "libvpx-vp9", "-deadline", "realtime", "-cpu-used", "5",
                    "-row-mt", "1", "-threads", str(self.threads)]
            cmd += self._rate_args(spec.bitrate)
            cmd += ["-c:a", "libopus", "-b:a", "128k", "-f", "webm"]
        else:
            cmd += self._h264_args()
            cmd += self._rate_args(spec.bitrate)
            cmd += ["-c:a", "aac", "-ac", "2", "-b:a", "128k",
                    "-movflags", "+faststart", "-f", "mp4"]
        cmd += ["-progress", "pipe:1", "-nostats", str(dst)]
        return cmd

    def segment_args(self, src: Path, variant: Variant, out_dir: Path, seg_dur: int) -> list[str]:
        gop = max(1, int(seg_dur) * 24)
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-i", str(src),
            "-map", "0:v:0", "-map", "0:a:0?", "-sn", "-dn",
            "-vf", f"scale={variant.width}:{variant.height}",
            *self._h264_args(gop=gop, seg_dur=seg_dur),
            *self._rate_args(variant.bitrate),
            "-c:a", "aac", "-ac", "2", "-b:a", "128k",
            "-f", "hls",
            "-hls_time", str(seg_dur),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", str(out_dir / f"{variant.height}p_%05d.ts"),
            "-progress", "pipe:1", "-nostats",
            str(out_dir / f"{variant.height}p.m3u8"),
        ]

    def frame_args(self, src: Path, dst: Path, at: float, width: int, height: int) -> list[str]:
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-ss", f"{max(0.0, float(at)):.3f}", "-i", str(src),
            "-frames:v", "1",
            "-vf", f"scale={int(width)}:{int(height)}:force_original_aspect_ratio=decrease",
            "-q:v", "3", "-f", "image2", str(dst),
        ]

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------
    async def transcode(self, src: Path, dst: Path, spec: OutputSpec,
                        progress: Optional[ProgressFn] = None, duration: Optional[float] = None) -> Path:
        await self._run(self.transcode_args(src, dst, spec), dst.with_name(dst.name + ".log"), progress, duration)
        return dst

    async def segment(self, src: Path, ladder: Sequence[Variant], out_dir: Path, seg_dur: int,
                      progress: Optional[ProgressFn] = None, duration: Optional[float] = None) -> Dict[int, Path]:
        """Encode each ladder rung into ``{h}p.m3u8`` + ``{h}p_NNNNN.ts``. Stops at the first failure."""
        manifests: Dict[int, Path] = {}
        total = max(1, len(ladder))
        for i, variant in enumerate(ladder):
            def _scaled(frac: float, _i: int = i):
                if progress:
                    return progress((_i + frac) / total)
                return None

            await self._run(self.segment_args(src, variant, out_dir, seg_dur),
                            out_dir / "ffmpeg.log", _scaled, duration)
            manifests[variant.height] = out_dir / f"{variant.height}p.m3u8"
        return manifests

    async def extract_frame(self, src: Path, dst: Path, at: float, width: int, height: int) -> Path:
        await self._run(self.frame_args(src, dst, at, width, height), dst.with_name(dst.name + ".log"))
        return dst

    # -------------------------------------------------------------------------
    # Process plumbing
    # -------------------------------------------------------------------------
    async def _run(self, cmd: list[str], log_path: Path,
                   progress: Optional[ProgressFn] = None, duration: Optional[float] = None) -> None:
        log.info("ffmpeg cmd=%s", " ".join(shlex.quote(x) for x in cmd))
        # stderr goes to a log file so an unread pipe cannot stall ffmpeg
        lf = await to_thread.run_sync(open, log_path, "ab", 0)
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd, stdout=asyncio.subprocess.PIPE, stderr=lf,
                )
            except OSError as e:
                raise EncodeFailure(f"ffmpeg not runnable: {e}") from e

            try:
                await self._pump_progress(proc, progress, duration)
                rc = await proc.wait()
            except BaseException:
                # cancellation or a failing progress callback: ffmpeg must not outlive the job
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
                raise
        finally:
            lf.close()

        if rc != 0:
            tail = await to_thread.run_sync(_read_tail, log_path)
            log.error("ffmpeg exited code %s\n%s", rc, tail)
            raise EncodeFailure(f"ffmpeg exited with code {rc}")
        with contextlib.suppress(OSError):
            log_path.unlink()

    @staticmethod
    async def _pump_progress(proc, progress: Optional[ProgressFn], duration: Optional[float]) -> None:
        if proc.stdout is None:
            return
        async for raw in proc.stdout:
            if not progress or not duration:
                continue
            line = raw.decode("ascii", errors="ignore").strip()
            # out_time_ms is microseconds despite the name
            if line.startswith(("out_time_us=", "out_time_ms=")):
                try:
                    us = int(line.split("=", 1)[1])
                except ValueError:
                    continue
                res = progress(min(1.0, max(0.0, us / 1_000_000 / duration)))
                if inspect.isawaitable(res):
                    await res


def _read_tail(path: Path) -> str:
    try:
        with open(path, "rb") as f:
            data = f.read()
        return data[-_LOG_TAIL:].decode("utf-8", errors="ignore")
    except OSError:
        return ""
