from __future__ import annotations

# ── Logging ───────────────────────────────────────────────────────────────────
import logging, logging.config
from .config import settings

_LEVEL = (settings.LOG_LEVEL or "INFO").upper()
logging.config.dictConfig({
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"std": {"format": "%(levelname)s  %(name)s: %(message)s"}},
    "handlers": {"console": {"class": "logging.StreamHandler", "formatter": "std"}},
    "root": {"level": _LEVEL, "handlers": ["console"]},
    "loggers": {
        "sqlalchemy":        {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "sqlalchemy.engine": {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "sqlalchemy.pool":   {"level": "WARNING", "handlers": ["console"], "propagate": False},
        "encoder":           {"level": "DEBUG" if settings.DEBUG else "INFO"},
    },
})

# ── Stdlib / FastAPI ──────────────────────────────────────────────────────────
import time
from typing import Optional
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

# ── Project imports ───────────────────────────────────────────────────────────
from .database import init_db, dispose_engine
from .errors import install_exception_handlers
from .media_api import router as media_router
from .services import Services, build_services
from .shares_api import router as shares_router


# Lightweight perf log for slow requests (ASGI-safe to avoid BaseHTTPMiddleware edge cases)
class PerfLoggerMiddleware:
    def __init__(self, app):
        self.app = app
        self.log = logging.getLogger("perf")

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        t0 = time.perf_counter()
        status_code = 0

        async def send_wrapper(message):
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = message.get("status", status_code)
            return await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            dt = (time.perf_counter() - t0) * 1000
            # long range streams are expected to be slow, only flag JSON-ish calls
            if dt > 800 and status_code not in (200, 206):
                self.log.warning("%s %s -> %d %0.0fms", scope.get("method", ""), scope.get("path", ""), status_code, dt)


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="mediagate", version="1.0.0")

    origins = [o.strip() for o in (settings.ALLOW_ORIGINS or "").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )
    app.add_middleware(PerfLoggerMiddleware)
    install_exception_handlers(app)

    prefix = settings.API_PREFIX.rstrip("/")
    app.include_router(media_router, prefix=prefix)
    app.include_router(shares_router, prefix=prefix)

    if services is not None:
        app.state.services = services

    # ── Lifecycle ──────────────────────────────────────────────────────────────
    @app.on_event("startup")
    async def startup_event():
        if getattr(app.state, "services", None) is None:
            await init_db()
            app.state.services = build_services(settings)
        await app.state.services.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        svc = getattr(app.state, "services", None)
        if svc is not None:
            await svc.stop()
        await dispose_engine()

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "mediagate"}

    return app


app = create_app()
