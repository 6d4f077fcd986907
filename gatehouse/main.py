"""Main FastAPI application for Gatehouse"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from gatehouse.config import settings
from gatehouse.database.database import engine, Base, SessionLocal
from gatehouse.errors import GatehouseError
from gatehouse.api.routes import (
    auth,
    two_fa,
    organizations,
    roles,
    permissions,
    invitations,
)
from gatehouse.middleware.rate_limiting import init_redis
from gatehouse.security.token_denylist import build_token_denylist
from gatehouse.services.notification_service import NotificationService
from gatehouse.services.permission_cache import build_permission_cache
from gatehouse.templates import seed_system_catalog

logger = structlog.get_logger()


def configure_logging():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
            if settings.APP_ENV == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
        ),
    )


def seed_database():
    """Create tables and the system permission catalog"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed_system_catalog(session)
    finally:
        session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    configure_logging()
    logger.info("Gatehouse service starting up", env=settings.APP_ENV)
    init_redis()
    seed_database()
    app.state.permission_cache = build_permission_cache()
    app.state.token_denylist = build_token_denylist()
    app.state.notifier = NotificationService()

    yield

    # Shutdown
    logger.info("Gatehouse service shutting down")


app = FastAPI(
    title="Gatehouse API",
    description="Multi-tenant identity, RBAC and tenant resolution service",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GatehouseError)
async def gatehouse_error_handler(request: Request, exc: GatehouseError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include routers
app.include_router(auth.router, prefix="/api/v1/auth", tags=["auth"])
app.include_router(two_fa.router, prefix="/api/v1/auth/2fa", tags=["2fa"])
app.include_router(organizations.router, prefix="/api/v1/organizations", tags=["organizations"])
app.include_router(roles.router, prefix="/api/v1/roles", tags=["roles"])
app.include_router(permissions.router, prefix="/api/v1/permissions", tags=["permissions"])
app.include_router(invitations.router, prefix="/api/v1/invitations", tags=["invitations"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "gatehouse"}
