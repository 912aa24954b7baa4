"""
SongStudio - Song Assembly Pipeline Service
FastAPI backend hosting provider webhooks and health checks
"""

from contextlib import asynccontextmanager
from typing import Dict, Any

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from .api.routes import webhooks
from .core.config import get_settings
from .core.logging import setup_logging
from .database.connection import database_manager

# Global settings
settings = get_settings()

# Setup logging
logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events"""

    logger.info("Starting SongStudio backend server...")

    try:
        await database_manager.initialize()
        logger.info("Database connections initialized")

    except Exception as e:
        logger.error(f"Failed to start SongStudio backend: {e}")
        raise

    yield

    logger.info("Shutting down SongStudio backend...")

    try:
        await database_manager.close()
        logger.info("Database connections closed")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title="SongStudio API",
    description="AI song assembly pipeline",
    version=settings.APP_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint"""
    db_status = await database_manager.check_health()

    if not db_status:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "services": {"database": "unhealthy"}}
        )

    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "services": {"database": "healthy"}
    }


# Provider callbacks
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])


if __name__ == "__main__":
    # Development server
    uvicorn.run(
        "songstudio.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level="info"
    )
