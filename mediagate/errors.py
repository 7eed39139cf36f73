# mediagate/errors.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger("errors")


class MediaError(HTTPException):
    """Base for every error the engine raises towards a client.

    `extra` is merged into the JSON envelope next to `success` and `message`.
    """

    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    message_default = "Internal error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        msg = message or self.message_default
        super().__init__(status_code=status_code or self.status_code_default, detail=msg, headers=headers)
        self.message = msg
        self.extra = dict(extra or {})


class InvalidPath(MediaError):
    status_code_default = status.HTTP_403_FORBIDDEN
    message_default = "Invalid path"


class AccessDenied(MediaError):
    status_code_default = status.HTTP_403_FORBIDDEN
    message_default = "Access denied"


class NotAuthenticated(MediaError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    message_default = "Not authenticated"


class NotFound(MediaError):
    status_code_default = status.HTTP_404_NOT_FOUND
    message_default = "Not found"


class UnsupportedType(MediaError):
    status_code_default = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    message_default = "Unsupported media type"


class EncodeFailure(MediaError):
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
    message_default = "Encoding failed"


class StoreUnavailable(MediaError):
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
    message_default = "Metadata store unavailable"


class JobAbandoned(Exception):
    """A claim outlived its TTL. Never rendered; the next request re-claims."""


# ---- shares ----
class ShareNotFound(NotFound):
    message_default = "Share not found or expired"


class ShareExpired(NotFound):
    message_default = "Share not found or expired"


class ShareExhausted(MediaError):
    status_code_default = status.HTTP_403_FORBIDDEN
    message_default = "Share access limit reached"


class SharePasswordRequired(MediaError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    message_default = "Password required"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message, extra={"requirePassword": True})


class ShareAccountRequired(MediaError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    message_default = "An account is required to open this share"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message, extra={"requireAccount": True})


# -----------------------------------------------------------------------------
# Handlers: every non-streaming error renders {success: false, message}
# -----------------------------------------------------------------------------
def _envelope(status_code: int, message: str, extra: Optional[Dict[str, Any]] = None,
              headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def media_error_handler(request: Request, exc: MediaError) -> JSONResponse:
    if isinstance(exc, InvalidPath):
        log.debug("invalid path %s: %s", request.url.path, exc.message)
    elif exc.status_code >= 500:
        log.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    return _envelope(exc.status_code, exc.message, exc.extra, getattr(exc, "headers", None))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _envelope(exc.status_code, detail, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        {"errors": jsonable_errors(exc)},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled error on %s %s", request.method, request.url.path)
    return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred.")


def jsonable_errors(exc: RequestValidationError) -> list:
    out = []
    for err in exc.errors():
        out.append({"loc": [str(x) for x in err.get("loc", ())], "msg": str(err.get("msg", ""))})
    return out


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MediaError, media_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
