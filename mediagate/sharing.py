# mediagate/sharing.py
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .errors import ShareExhausted, ShareExpired, ShareNotFound
from .models import ShareToken, utcnow
from .paths import AssetPath
from .store import MetadataStore
from .utils import generate_passphrase, hash_password, parse_duration, verify_password

log = logging.getLogger("share")


@dataclass
class IssuedShare:
    share: ShareToken
    password: Optional[str] = None

    @property
    def key(self) -> str:
        return self.share.key

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.share.expires_at


class ShareIssuer:
    """Mints, validates and redeems capability tokens for one asset path.

    Only an argon2 hash of a share password is stored; the clear passphrase is
    returned once, from :meth:`issue`.
    """

    def __init__(self, store: MetadataStore, default_ttl: Any = "7d"):
        self.store = store
        self.default_ttl = default_ttl

    async def issue(
        self,
        path: AssetPath,
        *,
        ttl: Any = None,
        require_password: bool = False,
        max_accesses: int = 0,
        require_account: bool = False,
        created_by: Optional[str] = None,
    ) -> IssuedShare:
        seconds = parse_duration(self.default_ttl if ttl is None else ttl)
        password = generate_passphrase() if require_password else None
        share = ShareToken(
            key=secrets.token_hex(16),
            path=path.value,
            expires_at=utcnow() + timedelta(seconds=seconds) if seconds > 0 else None,
            max_accesses=max(0, int(max_accesses or 0)),
            access_count=0,
            password_hash=hash_password(password) if password else None,
            require_account=bool(require_account),
            created_by=created_by,
        )
        share = await self.store.insert_share(share)
        log.info("share %s… issued for %r by %s (max=%s, password=%s)",
                 share.key[:8], share.path, created_by, share.max_accesses, bool(password))
        return IssuedShare(share=share, password=password)

    async def validate(self, key: str) -> ShareToken:
        share = await self.store.get_share(key) if key else None
        if share is None:
            raise ShareNotFound()
        if share.is_expired():
            raise ShareExpired()
        if share.is_exhausted():
            raise ShareExhausted()
        return share

    async def redeem(self, key: str) -> ShareToken:
        """Count one access. Store errors propagate as StoreUnavailable."""
        share = await self.store.increment_share_access(key)
        if share is None:
            raise ShareNotFound()
        return share

    @staticmethod
    def check_password(share: ShareToken, password: str) -> bool:
        if not share.password_hash:
            return True
        return verify_password(password or "", share.password_hash)

    async def revoke(self, key: str) -> bool:
        removed = await self.store.delete_share(key)
        if removed:
            log.info("share %s… revoked", key[:8])
        return removed
