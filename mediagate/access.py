# mediagate/access.py
"""Access resolution over stored permission grants.

A principal holds permission P on a path when an unexpired grant for its user
id or its role carries P and either sits on the path itself, or is recursive
and sits on a segment-wise ancestor. Admins bypass every check. Anything else
is denied, including store outages.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import AccessDenied, StoreUnavailable
from .models import Permission, UserRole, utcnow
from .paths import AssetPath
from .store import MetadataStore

log = logging.getLogger("access")


@dataclass(frozen=True)
class Principal:
    id: str
    role: str = UserRole.user.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin.value


class AccessResolver:
    def __init__(self, store: MetadataStore, *, open_by_default: bool = False, production: bool = False):
        self.store = store
        if open_by_default and production:
            log.error("ACCESS_OPEN_BY_DEFAULT is set in a production environment; ignoring it")
            open_by_default = False
        elif open_by_default:
            log.warning("ACCESS_OPEN_BY_DEFAULT is ON: every authenticated principal can access every path")
        self.open_by_default = open_by_default

    async def can_read(self, principal: Optional[Principal], path: AssetPath) -> bool:
        return await self.can_do(principal, path, Permission.read)

    async def can_do(self, principal: Optional[Principal], path: AssetPath, permission: Permission) -> bool:
        if principal is None:
            return False
        if principal.is_admin or self.open_by_default:
            return True

        try:
            grants = await self.store.grants_for(principal.id, principal.role, path.prefixes())
        except StoreUnavailable:
            log.warning("grant lookup failed for %s on %r; denying", principal.id, path.value)
            return False

        now = utcnow()
        for g in grants:
            if g.is_expired(now) or not g.allows(permission):
                continue
            if g.path == path.value:
                return True
            if g.recursive and path.is_within(g.path):
                return True
        return False

    async def require(self, principal: Optional[Principal], path: AssetPath,
                      permission: Permission = Permission.read) -> None:
        if not await self.can_do(principal, path, permission):
            raise AccessDenied("Access denied to this file")
