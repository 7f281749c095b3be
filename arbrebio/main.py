import structlog
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from arbrebio.api import contact, newsletter
from arbrebio.config import get_settings
from arbrebio.database import get_engine, init_db
from arbrebio.errors import register_exception_handlers
from arbrebio.logging_config import configure_logging
from arbrebio.middleware.request_id import RequestIdMiddleware
from arbrebio.middleware.security_headers import SecurityHeadersMiddleware
from arbrebio.services.email_service import email_service
from arbrebio.services.rate_limiter import cleanup_rate_limiter

# Configure structured logging
configure_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Database initialized")

    if not email_service.is_configured():
        logger.warning(
            "Email transport not configured - send, export, contact and quote endpoints will return 503",
            provider=settings.email_provider,
        )

    yield

    await cleanup_rate_limiter()
    await email_service.close()
    logger.info("Shutting down...")


app = FastAPI(
    title="Arbre Bio API",
    description="Newsletter, contact and quote endpoints for the Arbre Bio Africa website",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.app_env == "production" else "/docs",
    redoc_url=None if settings.app_env == "production" else "/redoc",
    openapi_url=None if settings.app_env == "production" else "/openapi.json",
)

register_exception_handlers(app)

# CORS - the site is served from both www and bare domains
cors_origins = [settings.frontend_url, settings.site_url]
for origin in list(cors_origins):
    if "://www." in origin:
        cors_origins.append(origin.replace("://www.", "://"))
    else:
        cors_origins.append(origin.replace("://", "://www."))

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

app.add_middleware(RequestIdMiddleware)

# Security headers middleware (outer, added last so it wraps every response)
app.add_middleware(SecurityHeadersMiddleware)

app.include_router(newsletter.router, prefix="/api", tags=["newsletter"])
app.include_router(contact.router, prefix="/api", tags=["contact"])


@app.get("/")
async def root():
    if settings.app_env == "production":
        return {"success": True, "message": "ok"}
    return {
        "success": True,
        "message": "Arbre Bio API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint that verifies database connectivity."""
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"success": True, "status": "healthy", "database": "connected"}
    except (SQLAlchemyError, OSError, ConnectionError, TimeoutError) as e:
        logger.warning(f"Health check failed: {type(e).__name__}: {e}")
        return JSONResponse(
            status_code=503,
            content={"success": False, "status": "unhealthy", "database": "disconnected"},
        )
