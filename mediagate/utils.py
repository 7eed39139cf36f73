# mediagate/utils.py
from __future__ import annotations
import os
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jose import jwt, JWTError

from .config import settings

# =======================
# Password utilities
# =======================

_PH = PasswordHasher()

def hash_password(password: str) -> str:
    return _PH.hash(password)

def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return _PH.verify(hashed, password)
    except (VerificationError, InvalidHashError):
        return False

_ADJECTIVES = (
    "amber", "brave", "calm", "clever", "crisp", "dusty", "eager", "fuzzy", "gentle", "happy",
    "icy", "jolly", "kind", "lucky", "mellow", "misty", "noble", "polar", "quiet", "rapid",
    "rusty", "silent", "snowy", "sunny", "swift", "tidy", "vivid", "witty", "young", "zesty",
)
_NOUNS = (
    "anchor", "badger", "canyon", "comet", "falcon", "forest", "glacier", "harbor", "island", "jaguar",
    "lantern", "meadow", "nebula", "orchid", "otter", "panda", "pebble", "pine", "quartz", "river",
    "rocket", "summit", "tiger", "tundra", "valley", "walrus", "willow", "wombat", "yak", "zephyr",
)

def generate_passphrase() -> str:
    """adjective + noun + two digits, e.g. ``snowyotter42``."""
    return f"{secrets.choice(_ADJECTIVES)}{secrets.choice(_NOUNS)}{secrets.randbelow(100):02d}"

# =======================
# JWT helpers
# =======================

ALGO = "HS256"

def create_token(payload: dict[str, Any], expires_in: int, *, token_type: str = "access") -> str:
    """
    Create a signed JWT. Adds standard 'typ', 'iat', 'exp'.
    'sub' should be present in payload for user id.
    """
    now = datetime.now(timezone.utc)
    exp = now + timedelta(seconds=int(expires_in))
    data = dict(payload)
    data.setdefault("typ", token_type)
    data["iat"] = int(now.timestamp())
    data["exp"] = int(exp.timestamp())
    return jwt.encode(data, settings.SECRET_KEY, algorithm=ALGO)

def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT. Returns payload dict or None on failure.
    """
    if not token:
        return None
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGO], options={"verify_aud": False})
    except JWTError:
        return None

# =======================
# Durations
# =======================

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.I)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}

def parse_duration(value: Any) -> int:
    """Seconds from an int or a ``"7d"``/``"12h"``/``"30m"`` string. Raises ValueError."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError("invalid duration")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError("negative duration")
        return int(value)
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"invalid duration {value!r}")
    return int(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()]

# =======================
# File types
# =======================

VIDEO_EXTS = {".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v", ".mpg", ".mpeg", ".3gp", ".ts"}
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".tiff", ".tif"}
AUDIO_EXTS = {".mp3", ".wav", ".ogg", ".flac", ".aac", ".m4a", ".wma", ".opus"}
SUBTITLE_EXTS = {".vtt", ".srt"}

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".3gp": "video/3gpp",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".wma": "audio/x-ms-wma",
    ".opus": "audio/opus",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".vtt": "text/vtt",
    ".srt": "application/x-subrip",
}

def file_type(name: str) -> str:
    ext = os.path.splitext(name)[1].lower()
    if ext in VIDEO_EXTS:
        return "video"
    if ext in IMAGE_EXTS:
        return "image"
    if ext in AUDIO_EXTS:
        return "audio"
    return "unknown"

def mime_type(name: str) -> str:
    return MIME_TYPES.get(os.path.splitext(name)[1].lower(), "application/octet-stream")
