"""
FastAPI Router for the club certificate API
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi import APIRouter
from loguru import logger

from src.services.certificates.errors import CertificateServiceError

# Import sub-routers
from src.api.certificates import router as certificates_router
from src.api.admin import router as admin_router
from src.api.points import router as points_router
from src.api.activities import router as activities_router
from src.api.users import router as users_router


# Main router
router = APIRouter()

# Include sub-routers (they already carry their prefixes)
router.include_router(certificates_router)
router.include_router(admin_router)  # Batch mint, issued list, revocation
router.include_router(points_router)  # Points award / check-in (certificate triggers)
router.include_router(activities_router)  # Activity join / end (certificate triggers)
router.include_router(users_router)  # Members and wallet binding


async def certificate_error_handler(request: Request, exc: CertificateServiceError) -> JSONResponse:
    """
    Map domain errors to JSON responses with the error's status code
    """
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "details": exc.details},
    )
