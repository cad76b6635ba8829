"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind a load balancer
- Circuit breaker around outbound mail
- Redis-backed rate limiting
- Request IDs and timing headers
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pybreaker import CircuitBreakerError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from services.booking.lifecycle import ProcedureError
from shared.utils.security import hash_token

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.contact.router import router as contact_router
from services.email.router import router as email_router
from services.mentor.router import router as mentor_router
from services.notification.router import router as notification_router
from services.profile.router import router as profile_router
from services.review.router import router as review_router
from services.rpc.router import router as rpc_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(message)s",
)
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.getLogger().handlers = [handler]
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} API...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Mentor Marketplace API

- **Auth**: email/password + JWT (15min) + refresh tokens, invites, password reset
- **Mentors**: directory, applications, pricing, weekly availability, earnings
- **Bookings**: request → confirm/decline → complete, with cancel and reschedule
- **RPC**: `POST /rpc/{name}` named procedures with `_`-prefixed parameters
- **Notifications**: in-app rows + WebSocket realtime + transactional email
- **Admin**: approval queue, invites, stats, audit log

### Authentication
Protected endpoints require `Authorization: Bearer <access_token>`.
Get a token from `/auth/signup` or `/auth/login`.

### Roles
- `client`: book mentors, write reviews
- `mentor`: manage slots and pricing, confirm/decline requests
- `admin`: approve mentors, platform stats
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: outermost first) ────────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter: per bearer token when authenticated,
        per IP otherwise. Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            auth_header = request.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                key = f"rate:auth:{hash_token(auth_header[7:])[:32]}"
                limit = settings.RATE_LIMIT_PER_MINUTE
            else:
                client_ip = request.client.host if request.client else "unknown"
                key = f"rate:unauth:{client_ip}"
                limit = settings.RATE_LIMIT_UNAUTH_PER_MINUTE
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(key, limit)
            except RedisError as e:
                logger.error(f"Rate limit check failed: {e}")
                allowed = True
            if not allowed:
                logger.warning(f"Rate limit exceeded for {key}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(ProcedureError)
    async def procedure_error_handler(request: Request, exc: ProcedureError):
        """Refused transitions and RPC failures: `{"message", "code"}`."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.message, "code": exc.code},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)

        if isinstance(exc, CircuitBreakerError):
            logger.error(f"[{request_id}] Service degraded - circuit breaker open: {exc}")
            return JSONResponse(
                status_code=503,
                content={
                    "detail": "Service temporarily unavailable. Please try again later.",
                    "request_id": request_id,
                    "status": "degraded",
                },
            )

        logger.error(f"[{request_id}] Exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except SQLAlchemyError:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except RedisError:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(auth_router)
    app.include_router(profile_router)
    app.include_router(mentor_router)
    app.include_router(booking_router)
    app.include_router(rpc_router)
    app.include_router(review_router)
    app.include_router(notification_router)
    app.include_router(contact_router)
    app.include_router(email_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Create the first admin account on first run (development only)."""
    if not settings.SEED_ADMIN_EMAIL or not settings.SEED_ADMIN_PASSWORD:
        return

    from sqlalchemy import func, select
    from config.database import AsyncSessionLocal
    from shared.models.models import Profile, User, UserRole
    from shared.utils.security import hash_password

    email = settings.SEED_ADMIN_EMAIL.lower()
    async with AsyncSessionLocal() as db:
        exists = await db.scalar(select(func.count(User.id)).where(User.email == email))
        if exists:
            return

        admin = User(email=email, password_hash=hash_password(settings.SEED_ADMIN_PASSWORD), role=UserRole.ADMIN)
        db.add(admin)
        await db.flush()
        db.add(Profile(user_id=admin.id, name="Admin", email=email, role=UserRole.ADMIN))
        await db.commit()
        logger.info(f"Seeded admin account {email}")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
