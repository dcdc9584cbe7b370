"""Main FastAPI application entry point"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
import logging

from book_detection.api.detection_jobs import router as detection_jobs_router
from book_detection.api.cron import router as cron_router
from book_detection.api.health import API_VERSION, router as health_router
from book_detection.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Book Detection API",
    description="Asynchronous book detection jobs for uploaded shelf photos",
    version=API_VERSION,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# Include routers
app.include_router(health_router)
app.include_router(detection_jobs_router)
app.include_router(cron_router)

# Prometheus scrape endpoint
app.mount("/metrics", make_asgi_app())


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Book Detection API",
        "version": API_VERSION,
        "status": "running",
    }
