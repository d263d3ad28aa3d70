"""CopyChief relay: FastAPI entry point.

Run a single worker with the in-memory connection backend, or set
COPYCHIEF_CONNECTION_BACKEND=redis to run several.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from copychief.api import admin, auth, billing, chat, tokens
from copychief.config import settings
from copychief.database import async_session, dispose_db, init_db
from copychief.exceptions import CopyChiefError
from copychief.middleware.rate_limiter import RateLimitMiddleware
from copychief.runtime import build_runtime

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    logger.info("Starting %s v%s", settings.app_name, settings.version)
    await init_db()
    logger.info("Database initialized")
    runtime = build_runtime(async_session)
    app.state.runtime = runtime
    await runtime.start()
    yield
    logger.info("Shutting down")
    await runtime.stop()
    await dispose_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Streaming chat relay with token metering",
    lifespan=lifespan,
)


@app.exception_handler(CopyChiefError)
async def copychief_error_handler(request: Request, exc: CopyChiefError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.add_middleware(RateLimitMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(auth.router, prefix="/api/v1/auth", tags=["auth"])
app.include_router(chat.router, prefix="/api/v1/chat", tags=["chat"])
app.include_router(tokens.router, prefix="/api/v1/tokens", tags=["tokens"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["billing"])


@app.get("/health")
async def health_check(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    return {
        "status": "ok",
        "version": settings.version,
        "provider_backend": settings.provider_backend,
        "connection_backend": settings.connection_backend,
        "open_streams": len(runtime.registry) if runtime else 0,
    }
