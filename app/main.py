from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv()

# Import core components
from app.core.logging_config import setup_logging
from app.core.settings import settings
from app.middleware.logging import LoggingMiddleware

# Import configuration
from app.config import init_firebase

# Import route modules
from app.routes import assignments, sessions, flags, health
from app.exceptions import AppException

# Set up logging first
logger = setup_logging()

_docs_enabled = not settings.is_production

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    from app.services.llm import get_llm_service
    llm_service = get_llm_service()
    if llm_service.is_available():
        llm_status = f"configured ({llm_service.primary_provider.PROVIDER_NAME})"
    elif settings.llm_mocks_enabled:
        llm_status = "not configured (using mocks)"
    else:
        llm_status = "not configured (scoring will fail)"

    logger.info("=" * 50)
    logger.info("Counselor Training API starting up")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"CORS origins: {settings.cors_origins}")
    logger.info(f"SQL Debug: {'enabled' if settings.sql_debug else 'disabled'}")
    logger.info(f"LLM: {llm_status}, timeout {settings.llm_timeout_seconds}s")
    logger.info("=" * 50)

    yield
    # Shutdown logic
    logger.info("Counselor Training API shutting down gracefully")

app = FastAPI(
    title="Counselor Training API",
    description="Assignments, roleplay sessions and evaluations for crisis-counselor training",
    version="1.0.0",
    docs_url="/docs" if _docs_enabled else None,
    redoc_url="/redoc" if _docs_enabled else None,
    lifespan=lifespan,
)

# Add middleware in correct order (last added = first executed)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Initialize Firebase (skip in test environment)
if not settings.is_test:
    init_firebase()

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(assignments.router)
app.include_router(sessions.router)
app.include_router(flags.router)

# Exception handlers
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    correlation_id = getattr(request.state, 'correlation_id', 'unknown')
    logger.warning(
        f"[{correlation_id}] {exc.code} on {request.method} {request.url.path}: {exc.detail}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "detail": exc.detail,
            "retryable": exc.retryable,
            "correlation_id": correlation_id,
        }
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    correlation_id = getattr(request.state, 'correlation_id', 'unknown')
    logger.error(f"[{correlation_id}] Unhandled exception on {request.url.path}: {str(exc)}", exc_info=True)

    content = {
        "error": "INTERNAL_ERROR",
        "detail": "Internal server error",
        "retryable": False,
        "correlation_id": correlation_id,
    }
    if settings.is_development:
        content["message"] = str(exc)
        content["type"] = type(exc).__name__
    return JSONResponse(status_code=500, content=content)

# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Counselor Training API",
        "version": "1.0.0",
        "environment": settings.environment,
        "docs_url": "/docs" if _docs_enabled else None,
        "health_check": "/health",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info" if settings.is_development else "warning"
    )
