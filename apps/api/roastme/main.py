from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import structlog

from roastme.core.config import settings
from roastme.routers import characters, credits, gallery, og, users, waitlist, webhooks
from roastme.core.rate_limit import check_rate_limit, rate_limiter
from roastme.core.exceptions import APIError, api_exception_handler


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        if "server" in response.headers:
            del response.headers["server"]
        return response


# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Roast Me Characters API", version=settings.app_version)

    # Stuck generation detection; off under test so it never races test sessions
    from roastme.services.job_monitor import job_monitor

    if not settings.testing:
        await job_monitor.start()

    yield

    logger.info("Shutting down Roast Me Characters API")

    if not settings.testing:
        await job_monitor.stop()

    await rate_limiter.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
# Roast Me Characters API

Upload a photo, get roasted as a 1/7 scale caricature figurine.

## Flow

* **Upload**: `POST /v1/characters` with a photo; costs 1 credit
* **Poll**: `GET /v1/characters/{id}/status` every 2-3 seconds
* **Share**: `GET /v1/characters/by-slug/{slug}` and the `/v1/og` preview card

## Identity

Send `X-User-Key`, or call `POST /v1/users/anonymous` to get the
`anon_user_id` cookie. `X-Idempotency-Key` on uploads prevents double charges.

## Rate Limiting

- Default: 30 requests per minute per client
- Over the limit: 429 Too Many Requests with `Retry-After`
    """,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Characters", "description": "Upload, generation status and retries"},
        {"name": "Gallery", "description": "Public characters"},
        {"name": "OG", "description": "Social preview images"},
        {"name": "Credits", "description": "Credit packages, balance and checkout"},
        {"name": "Webhooks", "description": "Stripe and Polar payment events"},
        {"name": "Users", "description": "Anonymous sessions and account linking"},
        {"name": "Waitlist", "description": "Launch waitlist"},
    ],
)

app.add_middleware(SecurityHeadersMiddleware)

# CORS - Configurable via CORS_ORIGINS env var
cors_origins = (
    ["*"]
    if settings.cors_origins == "*"
    else [origin.strip() for origin in settings.cors_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["X-User-Key", "X-Idempotency-Key", "Content-Type", "Authorization"],
)


app.add_exception_handler(APIError, api_exception_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.debug else "Something went wrong",
            }
        },
    )


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/health/detailed")
async def detailed_health_check():
    """Detailed health check with generation metrics and dependency status"""
    from roastme.services.job_monitor import get_generation_metrics

    try:
        generation_metrics = await get_generation_metrics()
    except Exception as e:
        logger.error("Failed to get generation metrics", error=str(e))
        generation_metrics = {"error": str(e)}

    redis_status = "healthy"
    try:
        await rate_limiter.is_allowed("health_check")
    except Exception:
        redis_status = "unhealthy"

    return {
        "status": "healthy",
        "version": settings.app_version,
        "generations": generation_metrics,
        "services": {
            "redis": redis_status,
            "ai_provider": settings.ai_provider,
            "storage_provider": settings.storage_provider,
            "payment_provider": settings.payment_provider,
        },
        "config": {
            "rate_limit_requests": settings.rate_limit_requests,
            "rate_limit_window": settings.rate_limit_window,
            "generation_max_attempts": settings.generation_max_attempts,
            "image_max_concurrent": settings.image_max_concurrent,
            "use_celery": settings.use_celery,
        },
    }


# Include routers with rate limiting
app.include_router(
    characters.router,
    prefix="/v1/characters",
    tags=["Characters"],
    dependencies=[Depends(check_rate_limit)],
)
app.include_router(
    gallery.router,
    prefix="/v1/gallery",
    tags=["Gallery"],
    dependencies=[Depends(check_rate_limit)],
)
app.include_router(og.router, prefix="/v1/og", tags=["OG"])
app.include_router(
    credits.router,
    prefix="/v1/credits",
    tags=["Credits"],
    dependencies=[Depends(check_rate_limit)],
)
# Providers retry on failure; never rate limited
app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["Webhooks"])
app.include_router(
    users.router,
    prefix="/v1/users",
    tags=["Users"],
    dependencies=[Depends(check_rate_limit)],
)
app.include_router(
    waitlist.router,
    prefix="/v1/waitlist",
    tags=["Waitlist"],
    dependencies=[Depends(check_rate_limit)],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("roastme.main:app", host="0.0.0.0", port=8000, reload=True)
