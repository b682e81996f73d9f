"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import medication_error_handler
from api.routes import router
from core.container import get_engine
from core.errors import MedicationError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events.

    Startup:
    - Load settings and build the engine
    - Initialize the database pool and schema (postgres backend)
    - Start the background sweeps when enabled

    Shutdown:
    - Stop the sweeps
    - Close database connection pool
    """
    # Startup
    logger.info("Starting Homecare Medications service...")

    try:
        engine = get_engine()
        logger.info(f"Settings loaded successfully ({engine.settings.storage_backend} storage)")

        await engine.startup()
        logger.info("Homecare Medications service started successfully")

    except Exception as e:
        logger.error(f"Failed to start service: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down Homecare Medications service...")
    await engine.shutdown()
    logger.info("Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Homecare Medications API",
    description="Medication scheduling, dose tracking and adherence for at-home care",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware (configure as needed for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(MedicationError, medication_error_handler)

# Include API routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Homecare Medications API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
