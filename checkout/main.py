"""
Checkout Service
Order pricing, payment settlement, gift cards and refunds
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import subprocess
import os

from sqlalchemy.engine import Engine

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from checkout.core_settings import Settings, get_settings
from checkout.api.routes import routers
from checkout.application.refunds import RefundProcessor
from checkout.application.settlement import SettlementOrchestrator
from checkout.application.webhooks import WebhookReconciler
from checkout.domain.errors import CheckoutError
from checkout.infrastructure.db import create_db_engine, build_session_factory, init_models
from checkout.infrastructure.gateway import PaymentGateway, build_gateway

SERVICE_DESCRIPTION = "Order and payment settlement service"

logger = get_logger(__name__)

def _run_migrations():
    logger.info("Running database migrations")
    result = subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=os.path.join(os.path.dirname(__file__), ".."),
        capture_output=True,
        text=True,
        check=False
    )
    if result.returncode != 0:
        logger.warning(f"Migration output: {result.stderr}")
    else:
        logger.info("Database migrations completed")

def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """Build the app; tests pass their own engine and gateway."""
    settings = settings or get_settings()
    setup_logging(service_name=settings.SERVICE_NAME, level=settings.LOG_LEVEL)

    engine = engine or create_db_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    gateway = gateway or build_gateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifecycle management"""
        logger.info(f"Starting {settings.SERVICE_NAME} version {settings.SERVICE_VERSION}")

        if settings.RUN_MIGRATIONS:
            try:
                _run_migrations()
            except Exception as e:
                logger.error(f"Migration error: {e}")

        if settings.AUTO_CREATE_TABLES:
            try:
                init_models(engine)
                logger.info("Database models initialized")
            except Exception as e:
                logger.error(f"Failed to initialize database models: {e}")
                raise

        missing = gateway.missing_configuration()
        if missing:
            logger.warning(
                "Payment gateway is not fully configured",
                extra={'extra_fields': {'provider': gateway.provider, 'missing': missing}}
            )

        logger.info(f"{settings.SERVICE_NAME} started successfully")

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.SERVICE_NAME}")
        engine.dispose()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    orchestrator = SettlementOrchestrator(session_factory, gateway, settings)
    refunds = RefundProcessor(session_factory, gateway, settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.orchestrator = orchestrator
    app.state.refunds = refunds
    app.state.reconciler = WebhookReconciler(session_factory, gateway, orchestrator, refunds)

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Request failed: {exc.message}",
            extra={'extra_fields': {
                'path': request.url.path,
                'status_code': exc.status_code,
                'code': exc.code,
            }}
        )
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})

    health_service = ServiceHealth(
        settings.SERVICE_NAME,
        settings.SERVICE_VERSION,
        engine=engine,
        config_check=gateway.missing_configuration,
    )
    app.include_router(health_service.create_health_router())

    for router in routers:
        app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "status": "running",
            "docs": "/api/docs"
        }

    @app.get("/info")
    async def info():
        """Service information endpoint"""
        return {
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "description": SERVICE_DESCRIPTION,
            "environment": os.getenv("ENVIRONMENT", "development"),
            "payment_gateway": gateway.provider,
            "endpoints": {
                "health": "/health",
                "ready": "/health/ready",
                "live": "/health/live",
                "metrics": "/metrics",
                "docs": "/api/docs"
            }
        }

    return app
