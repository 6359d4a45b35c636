"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import reconstruction

router = APIRouter()

# Reconstruction, abort/resume, job inspection and provider status routes
router.include_router(reconstruction.router, tags=["reconstruction"])
