# mediagate/paths.py
"""Validated logical asset paths.

Every storage access starts from an :class:`AssetPath`. The only way to build
one is :meth:`AssetPath.parse`, which rejects traversal, absolute prefixes and
characters that are unsafe on common filesystems.
"""
from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import List, Tuple

from .errors import InvalidPath

_FORBIDDEN_CHARS = set('<>:"|?*')
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_MAX_LEN = 4096


@dataclass(frozen=True)
class AssetPath:
    segments: Tuple[str, ...]

    @classmethod
    def parse(cls, raw: str | None) -> "AssetPath":
        s = raw if raw is not None else ""
        if not isinstance(s, str):
            raise InvalidPath("Path must be a string")
        if len(s) > _MAX_LEN:
            raise InvalidPath("Path too long")
        if s.startswith(("/", "\\")) or _DRIVE_RE.match(s):
            raise InvalidPath("Absolute paths are not allowed")
        if any(ch in _FORBIDDEN_CHARS or ord(ch) < 32 for ch in s):
            raise InvalidPath("Path contains forbidden characters")

        parts: List[str] = []
        for seg in s.replace("\\", "/").split("/"):
            if seg in ("", "."):
                continue
            if seg == "..":
                raise InvalidPath("Path traversal is not allowed")
            parts.append(seg)
        return cls(tuple(parts))

    @classmethod
    def root(cls) -> "AssetPath":
        return cls(())

    # -- views -----------------------------------------------------------------
    @property
    def value(self) -> str:
        return "/".join(self.segments)

    @property
    def name(self) -> str:
        return self.segments[-1] if self.segments else ""

    @property
    def suffix(self) -> str:
        return posixpath.splitext(self.name)[1].lower()

    @property
    def stem(self) -> str:
        return posixpath.splitext(self.name)[0]

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def parent(self) -> "AssetPath":
        return AssetPath(self.segments[:-1])

    def child(self, name: str) -> "AssetPath":
        return AssetPath.parse(f"{self.value}/{name}" if self.segments else name)

    def prefixes(self) -> List[str]:
        """Root-to-self prefixes: ``a/b/c`` gives ``["", "a", "a/b", "a/b/c"]``."""
        out = [""]
        for i in range(1, len(self.segments) + 1):
            out.append("/".join(self.segments[:i]))
        return out

    def is_within(self, other: "AssetPath | str") -> bool:
        """True when self equals `other` or sits below it on a segment boundary."""
        base = other.segments if isinstance(other, AssetPath) else AssetPath.parse(other).segments
        return self.segments[: len(base)] == base

    def __str__(self) -> str:
        return self.value
