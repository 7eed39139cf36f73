# mediagate/store.py
"""Metadata store: permission grants and share records over async SQLAlchemy.

Every driver or I/O failure leaves this module as :class:`StoreUnavailable`
so callers can decide between fail-closed (access checks) and hard failure
(share redemption).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import StoreUnavailable
from .models import PermissionGrant, ShareToken, SubjectKind, utcnow
from .paths import AssetPath

log = logging.getLogger("store")


class MetadataStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._Session = sessionmaker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._Session() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            log.warning("metadata store error: %r", e)
            raise StoreUnavailable() from e

    # ---- grants ----
    async def grants_for(
        self, user_id: str, role: str, paths: Sequence[str]
    ) -> List[PermissionGrant]:
        subject = or_(
            and_(PermissionGrant.subject_kind == SubjectKind.user, PermissionGrant.subject_id == user_id),
            and_(PermissionGrant.subject_kind == SubjectKind.role, PermissionGrant.subject_id == role),
        )
        q = select(PermissionGrant).where(PermissionGrant.path.in_(list(paths)), subject)
        async with self._session() as db:
            return list((await db.execute(q)).scalars().all())

    async def add_grant(
        self,
        *,
        subject_kind: SubjectKind,
        subject_id: str,
        path: str,
        permissions: Iterable[str] = ("read",),
        recursive: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> PermissionGrant:
        perms = {str(getattr(p, "value", p)) for p in permissions}
        grant = PermissionGrant(
            subject_kind=subject_kind,
            subject_id=subject_id,
            path=AssetPath.parse(path).value,
            can_read="read" in perms,
            can_write="write" in perms,
            can_delete="delete" in perms,
            can_share="share" in perms,
            recursive=recursive,
            expires_at=expires_at,
        )
        async with self._session() as db:
            db.add(grant)
            await db.commit()
            await db.refresh(grant)
        return grant

    async def remove_grant(self, grant_id: str) -> bool:
        async with self._session() as db:
            res = await db.execute(delete(PermissionGrant).where(PermissionGrant.id == grant_id))
            await db.commit()
            return (res.rowcount or 0) > 0

    # ---- shares ----
    async def insert_share(self, share: ShareToken) -> ShareToken:
        async with self._session() as db:
            db.add(share)
            await db.commit()
            await db.refresh(share)
        return share

    async def get_share(self, key: str) -> Optional[ShareToken]:
        async with self._session() as db:
            return await db.get(ShareToken, key)

    async def increment_share_access(self, key: str) -> Optional[ShareToken]:
        """Single-statement increment; concurrent callers never lose an update."""
        stmt = (
            update(ShareToken)
            .where(ShareToken.key == key)
            .values(access_count=ShareToken.access_count + 1)
        )
        async with self._session() as db:
            res = await db.execute(stmt)
            await db.commit()
            if not res.rowcount:
                return None
            return (await db.execute(
                select(ShareToken).where(ShareToken.key == key).execution_options(populate_existing=True)
            )).scalars().first()

    async def delete_share(self, key: str) -> bool:
        async with self._session() as db:
            res = await db.execute(delete(ShareToken).where(ShareToken.key == key))
            await db.commit()
            return (res.rowcount or 0) > 0

    async def purge_expired_shares(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        async with self._session() as db:
            res = await db.execute(
                delete(ShareToken).where(ShareToken.expires_at.is_not(None), ShareToken.expires_at <= now)
            )
            await db.commit()
            return res.rowcount or 0
