"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text

from etims.api.routes import api_router
from etims.core.config import get_fiscal_config, settings
from etims.core.exceptions import (
    FiscalConfigurationError,
    FiscalValidationError,
    LedgerEntryNotFound,
    LedgerStateError,
)
from etims.core.metrics import metrics
from etims.db.base import Base
from etims.db.session import SessionLocal, engine

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting KRA eTIMS service")

    # Refuse to start without a complete tenant identity
    config = get_fiscal_config()
    logger.info("eTIMS configured for TIN %s branch %s at %s", config.tin, config.bhf_id, config.base_url)

    # Create tables if they don't exist (for SQLite dev)
    # In production with PostgreSQL, use Alembic migrations
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    yield

    logger.info("Shutting down KRA eTIMS service")


app = FastAPI(
    title="KRA eTIMS Integration",
    description="Fiscal e-invoicing bridge between the restaurant backend and KRA eTIMS",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


@app.exception_handler(LedgerEntryNotFound)
async def ledger_entry_not_found_handler(request: Request, exc: LedgerEntryNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(LedgerStateError)
async def ledger_state_error_handler(request: Request, exc: LedgerStateError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
    )


@app.exception_handler(FiscalValidationError)
async def fiscal_validation_error_handler(request: Request, exc: FiscalValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "field": exc.field, "details": exc.details},
    )


@app.exception_handler(FiscalConfigurationError)
async def fiscal_configuration_error_handler(request: Request, exc: FiscalConfigurationError):
    logger.error("eTIMS configuration error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "eTIMS integration is misconfigured"})


# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "0.1.0"}


@app.get("/health/ready")
def readiness_check():
    """Readiness probe with database connectivity check."""
    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        database = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unhealthy"
    finally:
        if db:
            db.close()

    return {
        "status": "ready" if database == "healthy" else "degraded",
        "version": "0.1.0",
        "checks": {"database": database},
    }


@app.get("/metrics")
def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(metrics.get_prometheus_metrics(), media_type="text/plain")
