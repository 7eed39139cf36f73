# mediagate/models.py
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, Enum, Boolean, DateTime, func, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


# ---- Enums ----
class UserRole(str, enum.Enum):
    admin = "admin"
    editor = "editor"
    user = "user"


class SubjectKind(str, enum.Enum):
    user = "user"
    role = "role"


class Permission(str, enum.Enum):
    read = "read"
    write = "write"
    delete = "delete"
    share = "share"


# ---- Access grants ----
class PermissionGrant(Base):
    __tablename__ = "media_access"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    subject_kind: Mapped[SubjectKind] = mapped_column(Enum(SubjectKind), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(120), nullable=False)
    path: Mapped[str] = mapped_column(String(4096), nullable=False, default="")

    can_read: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_write: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_share: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    recursive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_media_access_subject_path", "subject_kind", "subject_id", "path"),
    )

    def allows(self, permission: Permission) -> bool:
        if permission is Permission.read:
            return bool(self.can_read)
        if permission is Permission.write:
            return bool(self.can_write)
        if permission is Permission.delete:
            return bool(self.can_delete)
        if permission is Permission.share:
            return bool(self.can_share)
        raise ValueError(f"unknown permission {permission!r}")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        exp = as_aware(self.expires_at)
        return exp is not None and exp <= (now or utcnow())


# ---- Shares ----
class ShareToken(Base):
    __tablename__ = "share_tokens"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    path: Mapped[str] = mapped_column(String(4096), nullable=False, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None, index=True)
    max_accesses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    require_account: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @property
    def password_required(self) -> bool:
        return bool(self.password_hash)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        exp = as_aware(self.expires_at)
        return exp is not None and exp <= (now or utcnow())

    def is_exhausted(self) -> bool:
        return self.max_accesses > 0 and self.access_count >= self.max_accesses
