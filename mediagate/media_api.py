# mediagate/media_api.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote

from anyio import to_thread
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response
from PIL import Image, UnidentifiedImageError

from .access import Principal
from .auth import get_current_principal, get_services
from .errors import EncodeFailure, InvalidPath, MediaError, NotFound, UnsupportedType
from .hls import FILE_RE, JOB_ID_RE
from .models import Permission
from .paths import AssetPath
from .planner import is_browser_safe, parse_format, parse_quality
from .services import Services
from .utils import SUBTITLE_EXTS, file_type, mime_type

router = APIRouter(prefix="/media", tags=["media"])

THUMB_CACHE_CONTROL = "public, max-age=86400"
MAX_IMAGE_EDGE = 4096

_LANG_LABELS = {
    "en": "English", "fr": "Français", "es": "Español", "de": "Deutsch", "it": "Italiano",
    "pt": "Português", "nl": "Nederlands", "ja": "日本語", "zh": "中文", "ru": "Русский",
}
_SRT_TS = re.compile(r"(\d{2}:\d{2}:\d{2}),(\d{3})")


# ---------------------------------------------------------------------------
# Helpers shared with the shares router
# ---------------------------------------------------------------------------
async def resolve_asset(
    svc: Services,
    principal: Optional[Principal],
    raw_path: str,
    permission: Permission = Permission.read,
) -> Tuple[AssetPath, Path]:
    """Validate, authorize and locate one asset. Order: 403 invalid, 403 denied, 404 missing."""
    asset = AssetPath.parse(raw_path)
    await svc.access.require(principal, asset, permission)
    source = svc.storage.resolve(asset)
    if not await svc.storage.exists(source):
        raise NotFound("File not found")
    return asset, source


def _bad_request(message: str) -> MediaError:
    return MediaError(message, status_code=status.HTTP_400_BAD_REQUEST)


def _pending_response(st, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "success": True,
            "status": "started" if st.started else "preparing",
            "eta": st.eta,
            "progress": st.progress,
            "message": message,
        },
    )


async def deliver(
    request: Request,
    svc: Services,
    asset: AssetPath,
    source: Path,
    *,
    quality: Optional[str] = None,
    fmt: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    allow_hls: bool = True,
) -> Response:
    if await svc.storage.is_dir(source):
        raise UnsupportedType("Folders cannot be streamed")

    kind = file_type(asset.name)
    if kind == "audio":
        return await svc.responder.serve(request, source, mime_type(asset.name))

    if kind == "image":
        if width or height:
            thumb = await svc.thumbnails.get(
                asset, source, width=width or MAX_IMAGE_EDGE, height=height or MAX_IMAGE_EDGE,
                time=0, kind="image",
            )
            return await svc.responder.serve(request, thumb, "image/jpeg", cache_control=THUMB_CACHE_CONTROL)
        return await svc.responder.serve(request, source, mime_type(asset.name))

    if kind != "video":
        raise UnsupportedType("Unsupported file type")

    try:
        q = parse_quality(quality)
        f = parse_format(fmt)
    except ValueError as e:
        raise _bad_request(str(e)) from e
    if f == "hls" and not allow_hls:
        f = "auto"

    if f == "hls":
        st = await svc.hls.prepare(asset, source, q)
        if st.ready:
            return RedirectResponse(svc.hls.manifest_url(st.key, st.location.name), status_code=status.HTTP_302_FOUND)
        if st.failed:
            raise EncodeFailure("HLS preparation failed", extra={"status": "failed", "retryable": True})
        return _pending_response(st, "Preparing adaptive stream")

    info = await svc.inspector.probe(source)
    plan = svc.planner.plan(asset, q, f, info)
    if plan.serve_original:
        return await svc.responder.serve(request, source, mime_type(asset.name))

    rung = next((v for v in plan.ladder if v.height == plan.quality), None)
    st = await svc.transcoder.request_rendition(
        asset, source, plan.quality, plan.format,
        bitrate=rung.bitrate if rung else None, info=info,
    )
    if st.ready:
        ctype = "video/webm" if plan.format == "webm" else "video/mp4"
        return await svc.responder.serve(request, st.location, ctype)
    if st.failed:
        raise EncodeFailure("Transcoding failed", extra={"status": "failed", "retryable": True})
    return _pending_response(st, "Transcoding in progress")


async def thumbnail_response(svc: Services, asset: AssetPath, source: Path, *,
                             width: int, height: int, time: float, refresh: bool) -> FileResponse:
    location = await svc.thumbnails.get(asset, source, width=width, height=height, time=time, refresh=refresh)
    return FileResponse(location, media_type="image/jpeg", headers={"Cache-Control": THUMB_CACHE_CONTROL})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.get("/stream/{path:path}")
async def stream(
    path: str,
    request: Request,
    quality: Optional[str] = Query(None),
    fmt: Optional[str] = Query(None, alias="format"),
    width: Optional[int] = Query(None, ge=1, le=MAX_IMAGE_EDGE),
    height: Optional[int] = Query(None, ge=1, le=MAX_IMAGE_EDGE),
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    return await deliver(request, svc, asset, source, quality=quality, fmt=fmt, width=width, height=height)


@router.get("/thumbnail/{path:path}")
async def thumbnail(
    path: str,
    width: Optional[int] = Query(None, ge=1, le=MAX_IMAGE_EDGE),
    height: Optional[int] = Query(None, ge=1, le=MAX_IMAGE_EDGE),
    time: Optional[float] = Query(None, ge=0),
    refresh: bool = Query(False),
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    cfg = svc.settings
    return await thumbnail_response(
        svc, asset, source,
        width=width or cfg.THUMB_WIDTH,
        height=height or cfg.THUMB_HEIGHT,
        time=cfg.THUMB_TIME if time is None else time,
        refresh=refresh,
    )


@router.get("/hls/{job_id}/{file}")
async def hls_file(
    job_id: str,
    file: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    if not JOB_ID_RE.match(job_id) or not FILE_RE.match(file):
        raise InvalidPath("Invalid HLS file name")
    src = await svc.hls.source_path_for(job_id)
    if not src:
        raise NotFound("Unknown HLS job")
    await svc.access.require(principal, AssetPath.parse(src))

    target = svc.hls.job_dir(job_id) / file
    if not await svc.storage.is_file(target):
        raise NotFound("HLS file not found")
    if file.endswith(".m3u8"):
        return await svc.responder.serve(request, target, "application/vnd.apple.mpegurl", cache_control="no-cache")
    return await svc.responder.serve(request, target, "video/mp2t", cache_control="public, max-age=3600")


@router.get("/formats/{path:path}")
async def formats(
    path: str,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    if file_type(asset.name) != "video":
        raise UnsupportedType("Formats are only listed for videos")
    info = await svc.inspector.probe(source)
    ladder = svc.planner.ladder(info)
    qualities = [{
        "quality": "original",
        "width": info.width,
        "height": info.height,
        "bitrate": info.bitrate,
        "directPlay": is_browser_safe(asset, info),
    }]
    qualities += [
        {"quality": v.label, "width": v.width, "height": v.height, "bitrate": v.bitrate, "directPlay": False}
        for v in reversed(ladder)
    ]
    return {"success": True, "qualities": qualities, "formats": ["auto", "mp4", "webm", "hls"]}


def _image_size(p: Path) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(p) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None, None


@router.get("/info/{path:path}")
async def info(
    path: str,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    st = await svc.storage.stat(source)
    kind = "folder" if await svc.storage.is_dir(source) else file_type(asset.name)
    media = {
        "path": asset.value,
        "name": asset.name,
        "type": kind,
        "mimetype": None if kind == "folder" else mime_type(asset.name),
        "size": None if kind == "folder" else st.st_size,
        "modifiedAt": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
    }
    if kind in ("video", "audio"):
        media.update((await svc.inspector.probe(source)).to_dict())
    elif kind == "image":
        w, h = await to_thread.run_sync(_image_size, source)
        media.update(width=w, height=h)
    return {"success": True, "media": media}


def _find_subtitles(svc: Services, asset: AssetPath, source: Path) -> list[dict]:
    pattern = re.compile(rf"^{re.escape(asset.stem)}\.(\w+)(\.\w+)$", re.I)
    prefix = svc.settings.API_PREFIX.rstrip("/")
    out = []
    for entry in svc.storage.iter_dir(source.parent):
        m = pattern.match(entry.name)
        if not m or m.group(2).lower() not in SUBTITLE_EXTS or not entry.is_file():
            continue
        lang = m.group(1).lower()
        out.append({
            "lang": lang,
            "format": m.group(2)[1:].lower(),
            "label": _LANG_LABELS.get(lang, lang.upper()),
            "file": entry.name,
            "url": f"{prefix}/media/subtitle/{quote(asset.value)}?lang={lang}",
        })
    return out


@router.get("/subtitles/{path:path}")
async def subtitles(
    path: str,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    found = await to_thread.run_sync(_find_subtitles, svc, asset, source)
    return {"success": True, "subtitles": found}


def srt_to_vtt(text: str) -> str:
    body = _SRT_TS.sub(r"\1.\2", text.replace("\r\n", "\n").lstrip("\ufeff"))
    return "WEBVTT\n\n" + body


@router.get("/subtitle/{path:path}")
async def subtitle(
    path: str,
    lang: str = Query(..., min_length=1, max_length=16, pattern=r"^\w+$"),
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, source = await resolve_asset(svc, principal, path)
    found = await to_thread.run_sync(_find_subtitles, svc, asset, source)
    match = next((s for s in found if s["lang"] == lang.lower()), None)
    if match is None:
        raise NotFound("Subtitle not found")
    sub_path = source.parent / match["file"]
    if match["format"] == "vtt":
        return FileResponse(sub_path, media_type="text/vtt")

    def _read() -> str:
        with open(sub_path, "r", encoding="utf-8", errors="replace") as fh:
            return fh.read()

    return Response(srt_to_vtt(await to_thread.run_sync(_read)), media_type="text/vtt")
