"""
Dimeloc API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import get_settings
from core.errors import register_exception_handlers
from db.session import Database

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    database = Database(settings.database_url, echo=settings.database_echo)
    await database.open()
    if settings.database_auto_create:
        await database.create_all()
    app.state.database = database
    logger.info("Dimeloc API starting up", version=settings.app_version)
    yield
    await database.close()
    logger.info("Dimeloc API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Field-visit intelligence for convenience-store networks",
    lifespan=lifespan,
)

register_exception_handlers(app)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import analysis, auth, feedback, stores, visits

app.include_router(auth.router)
app.include_router(stores.router)
app.include_router(visits.router)
app.include_router(feedback.router)
app.include_router(analysis.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for Cloud Run / load balancers."""
    return {
        "success": True,
        "status": "healthy",
        "version": settings.app_version,
        "timestamp": datetime.utcnow().isoformat(),
    }
