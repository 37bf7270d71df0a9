"""
Call Router - Main Application Entry Point

Multi-tenant call routing core: receives carrier webhooks, picks a voice
agent, agent group member or trunk for each call and answers with cXML.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from call_router import __version__
from call_router.core.config import settings
from call_router.core.logging import setup_logging, get_logger
from call_router.core.exceptions import CallRouterException
from call_router.api.routes import health, webhooks

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Starting Call Router")
    logger.info(f"Version: {__version__}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Routing configuration: {settings.routing_config_path}")
    logger.info("=" * 60)

    from call_router.services.call_routing_service import get_call_routing_service
    from call_router.services.config_service import get_configuration_service
    from call_router.services.coordination_store import close_redis

    config = get_configuration_service()
    logger.info(f"Loaded {len(config.snapshot.tenants)} tenant(s)")
    for (tenant_id, group_id), problems in config.validation_report().items():
        for problem in problems:
            logger.warning(f"Tenant {tenant_id} group {group_id}: {problem}")

    service = get_call_routing_service()

    yield

    # Shutdown
    logger.info("Shutting down Call Router")
    await service.shutdown()
    await close_redis()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Call Router API",
    description="""
    ## Multi-tenant voice call routing

    Carrier webhooks in, cXML call-control documents out.

    - **Call start**: `POST /api/v1/voice/application/{application_id}`
    - **Session updates**: `POST /api/v1/voice/session/update`
    - **Call detail records**: `POST /api/v1/voice/session/cdr`
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Custom Exception Handlers
@app.exception_handler(CallRouterException)
async def call_router_exception_handler(request: Request, exc: CallRouterException):
    """Carriers expect plain text error bodies"""
    logger.warning(f"CallRouterException: {exc.error_code} - {exc.message}")
    return PlainTextResponse(exc.message, status_code=exc.status_code)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = f"Internal server error: {exc}" if settings.debug else "Internal server error"
    return PlainTextResponse(message, status_code=500)


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/api")
async def api_info():
    """API information endpoint"""
    return {
        "service": "Call Router API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "call_start": "/api/v1/voice/application/{application_id}",
            "session_update": "/api/v1/voice/session/update",
            "session_cdr": "/api/v1/voice/session/cdr",
            "group_stats": "/stats/groups/{tenant_id}/{group_id}"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "call_router.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug
    )
