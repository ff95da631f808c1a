"""
Main FastAPI application for the filevault key-management service.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filevault.config import settings
from filevault.database import check_db_connection
from filevault.routes import files, health, keys, shares
from filevault.middleware.logging import RequestLoggingMiddleware
from filevault.services.envelope_engine import EnvelopeEngine
from filevault.services.key_registry import create_key_registry
from filevault.services.key_rotation import KeyRotationService
from filevault.services.kms import KMSProvider, create_kms_provider
from filevault.services.sharing import SharingService
from filevault.utils.logger import get_logger

logger = get_logger("main")


def init_key_services(app: FastAPI, kms: KMSProvider) -> None:
    """Build the key-management services around a KMS provider and store them in app.state."""
    registry = create_key_registry(kms)
    engine = EnvelopeEngine(kms, registry)

    app.state.kms_provider = kms
    app.state.key_registry = registry
    app.state.envelope_engine = engine
    app.state.sharing_service = SharingService(engine, registry)
    app.state.key_rotation_service = KeyRotationService(engine, registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info(
        "Starting filevault key-management service",
        environment="DEBUG" if settings.DEBUG else "PRODUCTION",
        log_level=settings.LOG_LEVEL,
        kms_provider=settings.KMS_PROVIDER,
    )

    db_connected = await check_db_connection()
    if db_connected:
        logger.info("Database connection established")
    else:
        logger.error("Failed to connect to database")

    # No KMS provider, no service
    try:
        init_key_services(app, create_kms_provider(settings.KMS_PROVIDER))
        logger.info("Key services initialized", provider=app.state.kms_provider.get_provider_version())
    except Exception as e:
        logger.critical("KMS provider initialization failed", provider=settings.KMS_PROVIDER, exc_info=True)
        raise RuntimeError(f"Cannot start application without a KMS provider: {e}") from e

    yield

    logger.info("Shutting down filevault key-management service")
    app.state.kms_provider = None
    app.state.key_registry = None
    app.state.envelope_engine = None
    app.state.sharing_service = None
    app.state.key_rotation_service = None


app = FastAPI(
    title="filevault",
    description="Key management and envelope encryption for end-to-end encrypted file storage",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(health.router, tags=["Health"])
app.include_router(
    keys.router,
    prefix="/api/v1",
    tags=["Keys"]
)
app.include_router(
    files.router,
    prefix="/api/v1",
    tags=["Files"]
)
app.include_router(
    shares.router,
    prefix="/api/v1",
    tags=["Shares"]
)


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint redirect to docs."""
    return {
        "message": "filevault key-management service",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "filevault.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
