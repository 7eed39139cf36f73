# mediagate/shares_api.py
from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .access import Principal
from .auth import SHARE_COOKIE_PREFIX, get_current_principal, get_optional_principal, get_services
from .errors import (
    MediaError,
    NotFound,
    ShareAccountRequired,
    ShareNotFound,
    SharePasswordRequired,
)
from .media_api import deliver, resolve_asset, thumbnail_response
from .models import Permission, ShareToken, as_aware
from .paths import AssetPath
from .services import Services
from .utils import create_token, decode_token, file_type, mime_type, parse_duration

router = APIRouter(tags=["shares"])


# -------- Schemas --------
class ShareCreateIn(BaseModel):
    path: str
    expiresIn: Optional[Union[int, str]] = None
    requirePassword: bool = False
    maxAccesses: int = Field(default=0, ge=0)
    requireAccount: bool = False


class ShareAccessIn(BaseModel):
    password: str = ""


# -------- Helpers --------
def _iso(dt) -> Optional[str]:
    dt = as_aware(dt)
    return dt.isoformat() if dt else None


def _share_url(request: Request, svc: Services, key: str) -> str:
    base = (svc.settings.PUBLIC_BASE_URL or str(request.base_url)).rstrip("/")
    return f"{base}/shared/{key}"


def _has_share_access(request: Request, share: ShareToken) -> bool:
    token = (
        request.headers.get("X-Share-Token")
        or request.cookies.get(f"{SHARE_COOKIE_PREFIX}{share.key}")
        or request.query_params.get("access")
    )
    payload = decode_token(token) if token else None
    return bool(payload and payload.get("typ") == "share" and payload.get("share") == share.key)


async def _open_share(
    request: Request, svc: Services, key: str, principal: Optional[Principal]
) -> Tuple[ShareToken, AssetPath, Path]:
    """Validate a share and its gates without counting an access."""
    share = await svc.shares.validate(key)
    if share.require_account and principal is None:
        raise ShareAccountRequired()
    if share.password_required and not _has_share_access(request, share):
        raise SharePasswordRequired()
    asset = AssetPath.parse(share.path)
    source = svc.storage.resolve(asset)
    if not await svc.storage.exists(source):
        raise NotFound("Shared file no longer exists")
    return share, asset, source


# -------- Owner endpoints --------
@router.post("/files/share")
async def create_share(
    data: ShareCreateIn,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    asset, _ = await resolve_asset(svc, principal, data.path, Permission.share)
    try:
        ttl = parse_duration(data.expiresIn) if data.expiresIn is not None else None
    except ValueError as e:
        raise MediaError(str(e), status_code=status.HTTP_400_BAD_REQUEST) from e

    issued = await svc.shares.issue(
        asset,
        ttl=ttl,
        require_password=data.requirePassword,
        max_accesses=data.maxAccesses,
        require_account=data.requireAccount,
        created_by=principal.id,
    )
    body = {
        "success": True,
        "shareToken": issued.key,
        "shareUrl": _share_url(request, svc, issued.key),
        "expiresAt": _iso(issued.expires_at),
        "maxAccesses": issued.share.max_accesses,
        "requireAccount": issued.share.require_account,
    }
    if issued.password:
        body["password"] = issued.password
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body)


@router.delete("/files/share/{token}")
async def revoke_share(
    token: str,
    principal: Principal = Depends(get_current_principal),
    svc: Services = Depends(get_services),
):
    share = await svc.store.get_share(token)
    if share is None:
        raise ShareNotFound()
    await svc.access.require(principal, AssetPath.parse(share.path), Permission.share)
    await svc.shares.revoke(token)
    return {"success": True}


# -------- Public endpoints --------
@router.get("/shared/{token}")
async def shared_info(
    token: str,
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
    svc: Services = Depends(get_services),
):
    share = await svc.shares.validate(token)
    if share.require_account and principal is None:
        raise ShareAccountRequired()
    asset = AssetPath.parse(share.path)
    source = svc.storage.resolve(asset)
    # a vanished file must not use up an access
    if not await svc.storage.exists(source):
        raise NotFound("Shared file no longer exists")
    share = await svc.shares.redeem(token)

    is_dir = await svc.storage.is_dir(source)
    size = None if is_dir else (await svc.storage.stat(source)).st_size
    remaining = max(0, share.max_accesses - share.access_count) if share.max_accesses else None
    return {
        "success": True,
        "media": {
            "name": asset.name,
            "type": "folder" if is_dir else file_type(asset.name),
            "mimetype": None if is_dir else mime_type(asset.name),
            "size": size,
            "isDirectory": is_dir,
        },
        "passwordRequired": share.password_required,
        "accountRequired": share.require_account,
        "expiresAt": _iso(share.expires_at),
        "remainingAccesses": remaining,
    }


@router.post("/shared/{token}/access")
async def shared_access(
    token: str,
    data: ShareAccessIn,
    principal: Optional[Principal] = Depends(get_optional_principal),
    svc: Services = Depends(get_services),
):
    share = await svc.shares.validate(token)
    if share.require_account and principal is None:
        raise ShareAccountRequired()
    if not share.password_required:
        raise MediaError("This share is not password protected", status_code=status.HTTP_400_BAD_REQUEST)
    if not svc.shares.check_password(share, data.password):
        raise MediaError("Incorrect password", status_code=status.HTTP_401_UNAUTHORIZED)

    ttl = svc.settings.SHARE_ACCESS_TOKEN_SECONDS
    access = create_token({"sub": f"share:{share.key}", "share": share.key}, ttl, token_type="share")
    resp = JSONResponse({"success": True, "accessToken": access})
    resp.set_cookie(
        f"{SHARE_COOKIE_PREFIX}{share.key}", access,
        httponly=True, samesite="lax", secure=bool(svc.settings.COOKIE_SECURE),
        path="/", max_age=ttl,
    )
    return resp


@router.get("/shared/stream/{token}")
async def shared_stream(
    token: str,
    request: Request,
    quality: Optional[str] = Query(None),
    fmt: Optional[str] = Query(None, alias="format"),
    principal: Optional[Principal] = Depends(get_optional_principal),
    svc: Services = Depends(get_services),
):
    _, asset, source = await _open_share(request, svc, token, principal)
    return await deliver(request, svc, asset, source, quality=quality, fmt=fmt, allow_hls=False)


@router.get("/shared/thumbnail/{token}")
async def shared_thumbnail(
    token: str,
    request: Request,
    width: Optional[int] = Query(None, ge=1, le=4096),
    height: Optional[int] = Query(None, ge=1, le=4096),
    time: Optional[float] = Query(None, ge=0),
    principal: Optional[Principal] = Depends(get_optional_principal),
    svc: Services = Depends(get_services),
):
    _, asset, source = await _open_share(request, svc, token, principal)
    cfg = svc.settings
    return await thumbnail_response(
        svc, asset, source,
        width=width or cfg.THUMB_WIDTH,
        height=height or cfg.THUMB_HEIGHT,
        time=cfg.THUMB_TIME if time is None else time,
        refresh=False,
    )


@router.get("/shared/download/{token}")
async def shared_download(
    token: str,
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
    svc: Services = Depends(get_services),
):
    _, asset, source = await _open_share(request, svc, token, principal)
    if await svc.storage.is_dir(source):
        raise MediaError("Folders cannot be downloaded", status_code=status.HTTP_400_BAD_REQUEST)
    return await svc.responder.serve(request, source, mime_type(asset.name), disposition="attachment")
