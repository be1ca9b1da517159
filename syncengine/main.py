"""
SyncEngine - tenant-scoped background execution engine

FastAPI application entry point: inbound platform webhooks, NDR and
operator commands, metrics. The scheduler runs in the arq worker.
"""
from fastapi import FastAPI
from sqlalchemy import text

# Import observability modules
from syncengine.config import settings
from syncengine.database import engine
from syncengine.logging_config import configure_logging
from syncengine.sentry_config import configure_sentry
from syncengine.middleware.logging import LoggingMiddleware
from syncengine.routes.metrics import router as metrics_router

# Import route modules
from syncengine.routes.webhooks import router as webhooks_router
from syncengine.routes.ndr import router as ndr_router
from syncengine.routes.jobs import router as jobs_router
from syncengine.routes.ops import router as ops_router
from syncengine.routes.shipments import router as shipments_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Tenant-scoped order sync, shipment tracking, NDR handling and webhook delivery",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(webhooks_router)
app.include_router(ndr_router)
app.include_router(jobs_router)
app.include_router(ops_router)
app.include_router(shipments_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as exc:
        database = f"unavailable: {type(exc).__name__}"
    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database
    }
