"""
Payments Microservice
M-Pesa checkout: STK push initiation, callback reconciliation, order status
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import os

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from app.core_settings import REQUIRED_SETTINGS, Settings, load_settings
from app.api.routes import orders_router, payments_router, transactions_router
from app.infrastructure.db import build_engine, build_session_factory, init_models
from app.infrastructure.mpesa import DarajaClient

# Service configuration
SERVICE_NAME = "payments-service"
SERVICE_DESCRIPTION = "M-Pesa payment initiation and reconciliation microservice"

logger = get_logger(__name__)

def create_app(settings: Optional[Settings] = None, gateway: Optional[DarajaClient] = None) -> FastAPI:
    """Build the application. Missing gateway configuration fails here, not per request."""
    settings = settings or load_settings()

    setup_logging(
        service_name=SERVICE_NAME,
        level=settings.LOG_LEVEL,
        version=settings.SERVICE_VERSION,
    )

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    gateway = gateway or DarajaClient(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle management"""
        logger.info(f"Starting {SERVICE_NAME} version {settings.SERVICE_VERSION}")

        try:
            init_models(engine)
            logger.info("Database models initialized")
        except Exception as e:
            logger.error(f"Failed to initialize database models: {e}")
            raise

        logger.info(
            f"{SERVICE_NAME} started successfully",
            extra={'extra_fields': {
                'mpesa_environment': settings.MPESA_ENVIRONMENT,
                'mpesa_base_url': settings.mpesa_base_url,
            }},
        )

        yield

        # Shutdown
        logger.info(f"Shutting down {SERVICE_NAME}")
        gateway.close()
        engine.dispose()

    app = FastAPI(
        title=SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    health_service = ServiceHealth(
        SERVICE_NAME,
        settings.SERVICE_VERSION,
        engine=engine,
        config_source=lambda name: getattr(settings, name, None),
        required_config=REQUIRED_SETTINGS,
    )
    app.include_router(health_service.create_health_router())

    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(transactions_router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    @app.get("/info")
    async def info():
        """Service information endpoint"""
        return {
            "service": SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "description": SERVICE_DESCRIPTION,
            "environment": os.getenv("ENVIRONMENT", "development"),
            "mpesa_environment": settings.MPESA_ENVIRONMENT,
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "live": "/health/live",
                "metrics": "/metrics",
                "docs": "/api/docs",
                "stk_push": "/payments/mpesa/stk-push",
                "callback": "/payments/mpesa/callback",
            }
        }

    return app

app = create_app()
