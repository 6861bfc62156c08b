"""
Chapter Content Server - Main Application

Single FastAPI application that serves:
- REST API endpoints for chapter content slots (file or text per slot)
- Admin password verification and rotation
- File downloads and the raw /uploads directory
- The frontend bundle from PUBLIC_DIR, when present
- Health check endpoint

State lives in one SQLite database plus the blob directory.  A background
task periodically sweeps blobs that no content slot references anymore.
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.auth import initialize_credentials
from src.config import (
    ADMIN_PASSWORD_HEADER,
    APP_ENV,
    APP_HOST,
    APP_PORT,
    APP_VERSION,
    CORS_ORIGINS,
    DB_PATH,
    DEBUG,
    LOG_LEVEL,
    ORPHAN_GRACE_SECONDS,
    ORPHAN_SWEEP_INTERVAL,
    PUBLIC_DIR,
    UPLOAD_DIR,
    UPLOAD_URL_PREFIX,
    ensure_directories,
)
from src.database import init_db
from src.routes.api import router as api_router
from src.routes.files import router as files_router
from src.services.content_store import sweep_orphan_blobs

# ---------------------------------------------------------------------------
# Logging setup — stdout only
# ---------------------------------------------------------------------------
logger.remove()

logger.add(
    sys.stdout,
    level="DEBUG" if DEBUG else LOG_LEVEL,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)

# ---------------------------------------------------------------------------
# Orphan blob sweep
# ---------------------------------------------------------------------------
_sweep_task: asyncio.Task[None] | None = None


async def _run_orphan_sweep() -> None:
    """Run a single orphan sweep, logging instead of raising."""
    try:
        await sweep_orphan_blobs(ORPHAN_GRACE_SECONDS)
    except Exception as e:
        logger.error("❌ Orphan sweep error: {}", e)


async def _periodic_orphan_sweep():
    """Background task that sweeps unreferenced blobs every N seconds."""
    if ORPHAN_SWEEP_INTERVAL <= 0:
        logger.info("ℹ️  Periodic orphan sweep is disabled (interval=0)")
        return

    while True:
        try:
            await asyncio.sleep(ORPHAN_SWEEP_INTERVAL)
            await _run_orphan_sweep()
        except asyncio.CancelledError:
            logger.debug("🧹 Periodic orphan sweep task cancelled")
            break


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    On startup:
        1. Create the data and blob directories
        2. Initialize / migrate the SQLite database
        3. Seed the admin credential if absent
        4. Sweep orphan blobs once, then start the periodic sweep

    On shutdown:
        5. Cancel the sweep task
        6. Log that no store connections remain open
    """
    global _sweep_task

    # --- Startup ---
    logger.info("🚀 Starting Chapter Content Server v{}", APP_VERSION)
    logger.info("📋 Environment: {} | Debug: {}", APP_ENV, DEBUG)

    # Step 1: Ensure directories exist
    ensure_directories()
    logger.info("📁 Data directories initialized")

    # Step 2: Initialize database (creates tables / runs migrations)
    try:
        init_db()
    except Exception as e:
        logger.critical("❌ Database initialization failed: {}", e)
        raise

    # Step 3: Admin credential
    await initialize_credentials()

    # Step 4: Orphan sweep
    await _run_orphan_sweep()
    _sweep_task = asyncio.create_task(_periodic_orphan_sweep())

    logger.success("✅ Application ready — listening on {}:{}", APP_HOST, APP_PORT)

    yield

    # --- Shutdown ---
    logger.info("🛑 Shutting down Chapter Content Server …")

    # Step 5: Cancel periodic tasks
    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass

    # Step 6: connections are opened per operation, none outlive a request
    logger.info("🟢 No database connections held ({})", DB_PATH)
    logger.info("👋 Shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Chapter Content Server",
        description=(
            "Keyed content repository: one uploaded file or text per "
            "(subject, feature, chapter), with admin-gated writes."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
    )

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", ADMIN_PASSWORD_HEADER],
        allow_credentials=True,
    )

    # ------------------------------------------------------------------
    # Error responses: always {success: false, message}
    # ------------------------------------------------------------------
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        fields = sorted(
            {".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()}
        )
        message = "Invalid request"
        if fields:
            message += f": {', '.join(f for f in fields if f)}"
        return JSONResponse(status_code=400, content={"success": False, "message": message})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "❌ Unhandled error on {} {}: {}", request.method, request.url.path, exc
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    # ------------------------------------------------------------------
    # Request logging middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every incoming HTTP request with timing information."""
        start = time.time()
        response = None
        try:
            response = await call_next(request)
        except Exception as exc:
            duration = round(time.time() - start, 3)
            logger.error(
                "❌ {method} {path} — unhandled error after {duration}s: {exc}",
                method=request.method,
                path=request.url.path,
                duration=duration,
                exc=exc,
            )
            raise
        else:
            duration = round(time.time() - start, 3)
            status = response.status_code

            if status >= 500:
                logger.error(
                    "📤 {method} {path} — {status} [{duration}s]",
                    method=request.method,
                    path=request.url.path,
                    status=status,
                    duration=duration,
                )
            elif status >= 400:
                logger.warning(
                    "📤 {method} {path} — {status} [{duration}s]",
                    method=request.method,
                    path=request.url.path,
                    status=status,
                    duration=duration,
                )
            else:
                if not request.url.path.startswith(UPLOAD_URL_PREFIX):
                    logger.info(
                        "📤 {method} {path} — {status} [{duration}s]",
                        method=request.method,
                        path=request.url.path,
                        status=status,
                        duration=duration,
                    )

            return response

    # ------------------------------------------------------------------
    # Register routers
    # ------------------------------------------------------------------
    app.include_router(api_router)  # /api/*       — JSON endpoints
    app.include_router(files_router)  # /download/* — attachments

    # ------------------------------------------------------------------
    # Static files (mounted last so routes take precedence)
    # ------------------------------------------------------------------
    app.mount(
        UPLOAD_URL_PREFIX,
        StaticFiles(directory=str(UPLOAD_DIR), check_dir=False),
        name="uploads",
    )
    if PUBLIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public")

    return app


# ---------------------------------------------------------------------------
# Create the app instance (used by Gunicorn / Uvicorn)
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# Direct execution (development)
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=APP_HOST,
        port=APP_PORT,
        reload=DEBUG,
        log_level="debug" if DEBUG else "info",
    )
