from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .container import ServiceContainer
from .database import create_tables
from .errors import OTACoreError, error_body, ota_error_handler, unhandled_error_handler
from .routers import amendments, health, monitoring, payloads, retention, webhooks
from .utils.logging_config import correlation_id_var, request_id_var, setup_logging
from .utils.metrics import record_http_request
from .utils.rate_limiter import limiter

logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
}


def create_app(services: ServiceContainer = None, manage_schema: bool = True) -> FastAPI:
    """
    Build the API.

    `services` lets tests inject a container wired to their own session
    factory and clock; by default one is built in the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("🚀 Starting OTA integration core...")
        logger.info(f"📍 Environment: {settings.environment}")

        if manage_schema:
            create_tables()

        container = services or ServiceContainer()
        app.state.services = container
        await container.start()
        logger.info("✅ Integration core ready")

        yield

        logger.info("👋 Shutting down OTA integration core...")
        await container.stop()

    app = FastAPI(
        title="OTA Integration Core",
        description="Channel integration layer: event bus, OTA adapters, payload audit, amendments",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter state
    app.state.limiter = limiter
    if services is not None:
        app.state.services = services

    # ================================
    # CORS MIDDLEWARE - MUST BE FIRST!
    # ================================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Correlation-Id"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    app.add_exception_handler(OTACoreError, ota_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(payloads.router)
    app.include_router(amendments.router)
    app.include_router(retention.router)
    app.include_router(monitoring.router)
    app.include_router(monitoring.metrics_router)

    return app


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        request_token = request_id_var.set(request_id)
        correlation_token = correlation_id_var.set(request.headers.get("X-Correlation-Id", ""))
        started = time.perf_counter()
        try:
            response = await call_next(request)
            route = request.scope.get("route")
            record_http_request(
                request.method,
                getattr(route, "path", "unmatched"),
                response.status_code,
                time.perf_counter() - started,
            )
            response.headers["X-Request-ID"] = request_id
            correlation_id = correlation_id_var.get()
            if correlation_id:
                response.headers["X-Correlation-Id"] = correlation_id
            return response
        finally:
            request_id_var.reset(request_token)
            correlation_id_var.reset(correlation_token)


# Rate limit handler
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content=error_body("rate_limited", "Too many requests, retry later"),
        headers={"Retry-After": "60"},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(HTTP_ERROR_CODES.get(exc.status_code, f"http_{exc.status_code}"), message),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content=error_body("validation_error", message))


setup_logging(level=settings.log_level, json_format=settings.is_production)

# Create FastAPI app
app = create_app()
