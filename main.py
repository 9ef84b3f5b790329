"""
Streaming platform subscription backend
Plans, Stripe and mobile-store subscriptions, webhook reconciliation, access checks
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from admin_tools import admin_router
from auth import auth_router
from config.settings import settings, IS_PRODUCTION
from database import init_db
from routers.subscription_router import subscription_router
from routers.webhook_router import webhook_router
from utils.errors import AppError
from utils.rate_limit import RateLimiterMiddleware
from utils.responses import error_response, success_response
from utils.shared_utils import utcnow

# ============================================================================
# LOGGING
# ============================================================================

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Streaming Subscriptions API")


def _is_render_env() -> bool:
    """Check if running in Render.com environment"""
    return bool(settings.render or settings.render_external_url or settings.render_service_name)


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            trace = traceback.format_exc()
            logger.error(f"Uncaught exception on {request.method} {request.url.path}: {e}\n{trace}")
            content = {"ok": False, "data": {}, "error": "Internal Server Error", "message": "Something went wrong"}
            # Expose the failure outside production for debugging
            if not IS_PRODUCTION:
                content["detail"] = str(e)
                content["trace"] = trace
            return JSONResponse(status_code=500, content=content)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # JSON API only: nothing is allowed to load from responses
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"

        # Only set HSTS where HTTPS is guaranteed
        if _is_render_env():
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(RateLimiterMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return error_response(exc.error_code, status=exc.status_code, message=exc.message, data=exc.data)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Field-level 400 response for malformed request bodies and parameters"""
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]) or "body",
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    return error_response("validation_error", status=400, message="Validation failed", data={"errors": errors})


# ============================================================================
# STARTUP
# ============================================================================

@app.on_event("startup")
async def check_env_keys_on_startup():
    """Check for missing environment variables on startup (non-fatal warning)"""
    key_checks = {
        "JWT_SECRET_KEY": settings.jwt_secret_key,
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "STRIPE_STANDARD_PRICE_ID": settings.stripe_standard_price_id,
        "STRIPE_PREMIUM_PRICE_ID": settings.stripe_premium_price_id,
        "APPLE_SHARED_SECRET": settings.apple_shared_secret,
    }
    missing = [key for key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")


@app.on_event("startup")
async def initialize_database():
    """Create all tables."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


# ============================================================================
# ROUTES
# ============================================================================

@app.get("/health")
async def health():
    return success_response(data={"status": "OK", "timestamp": utcnow().isoformat()})


app.include_router(webhook_router)
app.include_router(auth_router)
app.include_router(subscription_router)
app.include_router(admin_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
