import os
import subprocess
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kbchat.config.logger import app_logger, log_request_start, log_request_end, log_request_error
from kbchat.config.settings import settings
from kbchat.db.storage import Storage, get_storage, reset_storage
from kbchat.services.errors import KnowledgeBaseError
from kbchat.services.relay import wait_for_pending_persistence
from kbchat.utils.responses import error_response
from kbchat.api.chat.router import router as chat_router
from kbchat.api.sync.router import router as sync_router


_git_sha_cache: Optional[str] = None


def get_git_sha() -> str:
    """Get the current Git commit SHA (cached to avoid blocking)."""
    global _git_sha_cache
    if _git_sha_cache is not None:
        return _git_sha_cache

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=1.0
        )
        _git_sha_cache = result.stdout.strip()[:8]
        return _git_sha_cache
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        _git_sha_cache = "local-dev"
        return _git_sha_cache


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager for startup and shutdown events."""
    # Startup
    app_logger.info(f"{settings.APP_NAME} starting up")
    app_logger.info(
        f"Storage backend: {settings.effective_storage_backend}, "
        f"retrieval: {settings.effective_retrieval_mode}, "
        f"stream strategy: {settings.STREAM_STRATEGY}"
    )
    app_logger.info("Logging system active - logs will be saved to logs/ directory")

    storage = get_storage()
    try:
        await storage.setup()
        is_ok, message = await storage.ping()
        if is_ok:
            app_logger.info(f"Storage connection: {message}")
        else:
            app_logger.warning(f"Storage connection issue: {message}")
    except Exception as e:
        app_logger.warning(f"Storage initialization: {e}")
        app_logger.info("Check DATABASE_URL or SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY")

    app_logger.info("Application initialized successfully")

    yield

    # Shutdown
    app_logger.info(f"{settings.APP_NAME} shutting down")
    await wait_for_pending_persistence()
    await storage.close()
    reset_storage()
    app_logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    servers=[
        {
            "url": "http://localhost:8000",
            "description": "Development server",
        },
    ],
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add PRODUCTION DOMAINS HERE
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id"],
)


# Logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests with timing information using Loguru."""
    start_time = datetime.now()

    # Log request start
    log_request_start(request)

    # Process request
    try:
        response = await call_next(request)

        # Calculate processing time
        process_time = (datetime.now() - start_time).total_seconds()

        # Log response
        log_request_end(request, response.status_code, process_time)

        return response

    except Exception as e:
        # Log error
        process_time = (datetime.now() - start_time).total_seconds()
        log_request_error(request, e, process_time)
        raise


@app.exception_handler(KnowledgeBaseError)
async def knowledge_base_error_handler(request: Request, exc: KnowledgeBaseError):
    """Render service errors with their taxonomy status code."""
    if exc.status_code >= 500:
        app_logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message} ({exc.detail})")
    else:
        app_logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.message, exc.detail).model_dump(mode="json"),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are 400s."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content=error_response("Invalid request", problems).model_dump(mode="json"),
    )


@app.get("/", tags=["health"])
async def root():
    """Root endpoint with basic API information."""
    app_logger.info("Root endpoint accessed")
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "status": "operational",
        "storage": settings.effective_storage_backend,
        "retrieval": settings.effective_retrieval_mode,
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/status", tags=["health"])
async def status():
    """Status endpoint with build information for CI/CD monitoring."""
    app_logger.info("Status endpoint accessed")

    # Get build information from environment variables (CI-injected)
    build_number = os.getenv("BUILD_NUMBER", "local-dev")
    git_sha = os.getenv("GIT_SHA", os.getenv("GITHUB_SHA", get_git_sha()))
    environment = os.getenv("ENVIRONMENT", os.getenv("ENV", "development"))

    return {
        "status": "ok",
        "build": build_number,
        "sha": git_sha,
        "env": environment
    }


@app.get("/health/db", tags=["health"])
async def health_db(storage: Storage = Depends(get_storage)):
    """Storage health endpoint."""
    is_ok, message = await storage.ping()
    if not is_ok:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "unavailable", "message": message}
        )
    return {"status": "ok", "db": "available", "backend": storage.backend, "message": message}


# Include API routers
app.include_router(chat_router)
app.include_router(sync_router)


if __name__ == "__main__":
    import uvicorn

    # Log startup
    app_logger.info(f"Starting {settings.APP_NAME} server")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_config=None  # Use our custom logger
    )
