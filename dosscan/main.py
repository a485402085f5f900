"""Main FastAPI application for the DOS scanner."""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dosscan import __version__
from dosscan.api import routes_analysis
from dosscan.config import settings
from dosscan.logging_setup import configure_logging

configure_logging()

logger = structlog.get_logger()

# Create FastAPI app
app = FastAPI(
    title="dosscan",
    description="Static denial-of-service scanner for Solidity contracts",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_analysis.router, prefix="/api/v1", tags=["analysis"])


@app.on_event("startup")
async def startup_event() -> None:
    """Initialize application on startup."""
    logger.info(
        "dosscan_starting",
        version=__version__,
        log_level=settings.log_level,
        solc_version=settings.solc_version,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Clean up on shutdown."""
    logger.info("dosscan_shutting_down")


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": "dosscan",
        "version": __version__,
        "status": "operational",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
