"""Middleware and exception handlers for the FastAPI application"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import (
    AIServiceError,
    BillingError,
    DuplicateTransactionError,
    InsufficientCreditsError,
)
from app.core.logging import credits_logger
from app.core.security import log_api_access, SESSION_COOKIE

logger = logging.getLogger(__name__)


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def access_log_middleware(request: Request, call_next):
    """Middleware for API access logging"""
    session_id = request.cookies.get(SESSION_COOKIE)
    status_code = 500
    error = None

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        if request.url.path not in ("/health", "/metrics"):
            log_api_access(request, session_id, status_code, error)


async def insufficient_credits_handler(request: Request, exc: InsufficientCreditsError):
    """403 with the payload the billing UI reads (required / available / shortfall)"""
    credits_logger.info(
        f"Insufficient credits on {request.url.path}: required {exc.required}, available {exc.available}"
    )
    return JSONResponse(status_code=403, content=exc.to_dict())


async def billing_error_handler(request: Request, exc: BillingError):
    status_code = 409 if isinstance(exc, DuplicateTransactionError) else 400
    credits_logger.warning(f"Billing error on {request.url.path}: {exc.code} - {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def ai_service_error_handler(request: Request, exc: AIServiceError):
    logger.error(f"AI provider failure on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=502,
        content={"error": "AI_SERVICE_ERROR", "message": exc.message}
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


def register_exception_handlers(app):
    # Starlette picks the most specific class in the MRO, so order does not matter
    app.add_exception_handler(InsufficientCreditsError, insufficient_credits_handler)
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(AIServiceError, ai_service_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
