# mediagate/auth.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from .access import Principal
from .errors import NotAuthenticated
from .models import UserRole
from .services import Services
from .utils import decode_token

ACCESS_COOKIE = "mg_access"
SHARE_COOKIE_PREFIX = "mg_share_"

_ROLES = {r.value for r in UserRole}


def get_services(request: Request) -> Services:
    return request.app.state.services


def _token_from_request(request: Request) -> Optional[str]:
    # Bearer header first (apps), then cookie (browser), then ?token= (media players)
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.replace("Bearer ", "", 1).strip() or None
    return request.cookies.get(ACCESS_COOKIE) or request.query_params.get("token") or None


def principal_from_token(token: Optional[str]) -> Optional[Principal]:
    payload = decode_token(token) if token else None
    if not payload or payload.get("typ") != "access":
        return None
    uid = payload.get("sub")
    if not uid:
        return None
    role = str(payload.get("role") or UserRole.user.value)
    return Principal(id=str(uid), role=role if role in _ROLES else UserRole.user.value)


async def get_optional_principal(request: Request) -> Optional[Principal]:
    return principal_from_token(_token_from_request(request))


async def get_current_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    if principal is None:
        raise NotAuthenticated()
    return principal
