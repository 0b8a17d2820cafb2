from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from crm_messaging.core.config import settings
from crm_messaging.core.exceptions import BrokerError, MessagingServiceError
from crm_messaging.core.logging import setup_logging
from crm_messaging.api.v1.router import api_router
from crm_messaging.workers.manager import PipelineManager


# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    pipeline = PipelineManager.from_settings(settings)
    app.state.pipeline = pipeline

    # Startup
    try:
        if pipeline.redis is not None:
            await pipeline.redis.connect()
        await pipeline.start()
        logger.info("CRM Messaging Service startup completed")
    except Exception as e:
        logger.error(f"CRM Messaging Service startup failed: {e}")
        raise

    yield

    # Shutdown
    try:
        await pipeline.shutdown()
        if pipeline.redis is not None:
            await pipeline.redis.disconnect()
        logger.info("CRM Messaging Service shutdown completed")
    except Exception as e:
        logger.error(f"CRM Messaging Service shutdown failed: {e}")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
    **CRM Messaging Service**

    Delivers agent replies to WhatsApp through RabbitMQ and the Evolution API.

    ## Features

    - **Outbound queue** - replies are queued, delivered and recorded once
    - **Retries** - exponential backoff with jitter, then dead-letter and operator alert
    - **Webhook deduplication** - bursts of repeated provider events are collapsed
    - **Connectivity monitor** - circuit breakers for webhook endpoints
    - **Queue management** - stats, purge and manual dead-letter reprocessing
    """,
        version=settings.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if use_lifespan else None,
    )
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API router
    app.include_router(api_router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with service information."""
        return {
            "service": settings.APP_NAME,
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
            "status": "running",
            "docs_url": "/docs",
            "health_check": "/v1/health",
            "features": [
                "Outbound Message Queue",
                "Retry and Dead Letter",
                "Webhook Deduplication",
                "Connectivity Monitoring",
                "Queue Management"
            ]
        }

    @app.exception_handler(BrokerError)
    async def broker_exception_handler(request: Request, exc: BrokerError):
        logger.error(f"Broker error: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "error": "Message broker unavailable",
                "details": str(exc) if settings.DEBUG else None
            }
        )

    @app.exception_handler(MessagingServiceError)
    async def service_exception_handler(request: Request, exc: MessagingServiceError):
        logger.error(f"Service error: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": exc.__class__.__name__,
                "details": str(exc) if settings.DEBUG else "An unexpected error occurred"
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "details": str(exc) if settings.DEBUG else "An unexpected error occurred"
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "status_code": exc.status_code
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "crm_messaging.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
