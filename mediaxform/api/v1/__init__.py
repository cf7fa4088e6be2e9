"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/media/*   upload, read, list, delete, transform
- /api/v1/metrics   Prometheus scrape endpoint
"""

from fastapi import APIRouter

from mediaxform.api.v1.media import router as media_router
from mediaxform.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(media_router, prefix="/media", tags=["media"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
