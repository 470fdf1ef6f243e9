"""
FastAPI application entry point.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relaykit.config import settings
from relaykit.api import audit, errors, webhooks
from relaykit.dependencies import get_container
from relaykit.utils.logging import setup_logging, get_logger

# Configure structured logging
setup_logging(settings.log_level)

logger = get_logger(__name__)

# Create FastAPI application
app = FastAPI(
    title="RelayKit",
    description="Error classification, retry, webhook delivery and audit logging service",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "healthy", "version": "0.1.0"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "RelayKit API",
        "version": "0.1.0",
        "docs": "/docs"
    }


# Include API routers
app.include_router(webhooks.router)
app.include_router(errors.router)
app.include_router(audit.router)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("Starting RelayKit API")

    await get_container().initialize()
    logger.info("Services initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown."""
    logger.info("Shutting down RelayKit API")

    await get_container().close()
    logger.info("Services closed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
