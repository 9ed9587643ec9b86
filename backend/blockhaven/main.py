"""Blockhaven FastAPI Application.

Brokers crypto exchanges through the aggregator provider and keeps a local
copy of its currency and pair catalogs.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .errors import register_exception_handlers
from .models import Database
from .routers import exchanges, health
from .services.catalog_sync import CatalogSynchronizer
from .services.config import config_service, ConfigValidationException
from .services.logging_service import configure_logging
from .services.provider import ProviderClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)

    configure_logging(config_service.get("logging.level"), config_service.get("logging.format"))
    logger.info("Configuration validated successfully")

    database = Database(config_service.get("database.url"), echo=bool(config_service.get("database.echo")))
    database.open()
    await database.create_all()
    logger.info("Database initialized")

    provider = ProviderClient.from_config(config_service)

    app.state.config = config_service
    app.state.database = database
    app.state.provider = provider
    app.state.synchronizer = CatalogSynchronizer.from_config(config_service, database, provider)

    yield

    logger.info("Initiating graceful shutdown...")
    await provider.close()
    await database.close()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="Blockhaven API",
    description="Crypto exchange brokerage API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config_service.get("server.cors_origins"),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(exchanges.router, prefix="/api/exchanges", tags=["Exchanges"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "Blockhaven API", "docs": "/docs"}
