"""
FastAPI server for the club certificate service
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config.config import validate_config, ALLOWED_ORIGINS, API_HOST, API_PORT, ENVIRONMENT
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import check_connection, dispose_engine, init_db
from src.api.rate_limit import limiter
from src.api.router import router as api_router, certificate_error_handler
from src.services.certificates.container import build_certificate_services
from src.services.certificates.errors import CertificateServiceError

# Setup logging at module level (must run before app creation)
# so that it works when uvicorn imports the module
setup_logging()
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting Club Certificate API Server...")
    validate_config()

    # Production schema is managed by Alembic (alembic upgrade head)
    if ENVIRONMENT == "development":
        await init_db()

    services = build_certificate_services()
    app.state.certificates = services

    yield

    # Shutdown
    logger.info("Shutting down Club Certificate API Server...")

    # Let fire-and-forget pin/mint tasks finish, the sweep picks up the rest
    await services.shutdown()

    await dispose_engine()
    logger.info("Database connections closed")


app = FastAPI(
    title="Club Certificate API",
    description="Certificate issuance, IPFS archiving and on-chain anchoring",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(CertificateServiceError, certificate_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Club Certificate API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """
    Health check endpoint (database connectivity)
    """
    if not await check_connection():
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": False})
    return {"status": "healthy", "database": True}


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    # Log 4xx as warning, 5xx as error
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "detail": str(exc) if ENVIRONMENT == "development" else "An error occurred",
        },
    )


def main() -> None:
    import uvicorn

    uvicorn.run(
        "api_server:app",
        host=API_HOST,
        port=API_PORT,
        reload=ENVIRONMENT == "development",
        log_level="info",
    )


if __name__ == "__main__":
    main()
