"""FastAPI application factory"""

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from recon_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from recon_gateway.api.v1 import reconcile, matches, patterns
from recon_gateway.infrastructure.observability.logging import setup_logging
from recon_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Recon Gateway",
        description="Bank transaction to bill/invoice reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(reconcile.router, prefix="/v1", tags=["reconciliation"])
    app.include_router(matches.router, prefix="/v1", tags=["matches"])
    app.include_router(patterns.router, prefix="/v1", tags=["patterns"])

    return app


app = create_app()
