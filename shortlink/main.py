"""FastAPI application entry point for the shortlink service.

Application Lifecycle Diagram
=============================
::
    ┌──────────────┐
    │ lifespan()   │
    │ startup:     │
    │ init_db()    │
    │ manager.init │
    │ sweeper.start│
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    │ requests     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ shutdown:    │
    │ sweeper.stop │
    │ drain visits │
    │ close_redis()│
    │ close_db()   │
    └──────────────┘

How to Use
===========
**Run with uvicorn**::
    uvicorn shortlink.main:app --host 0.0.0.0 --port 8080

Key Behaviours
===============
- Database tables are created automatically on startup.
- Pending visit recordings are drained (with a timeout) before shutdown.
- ``ShortlinkError`` subclasses render as ``{"error": message}`` with their
  HTTP status; store outages surface as a bare 503.
- Prometheus metrics are exposed on ``/metrics``.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from shortlink.config import get_settings
from shortlink.database import close_db, init_db
from shortlink.dependencies import _service_manager
from shortlink.errors import ShortlinkError, StoreUnavailableError
from shortlink.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    _service_manager.sweeper.start()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="URL shortener with protected links, custom domains and visit statistics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShortlinkError)
async def shortlink_error_handler(request: Request, exc: ShortlinkError) -> JSONResponse:
    if isinstance(exc, StoreUnavailableError):
        _service_manager.logger.error(f"Store unavailable on {request.url.path}: {exc.__cause__!r}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
