"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.vetsync.api.v1 import data_sync, ghl, health, identity, organizations

router = APIRouter()

router.include_router(health.router)
router.include_router(ghl.router)
router.include_router(data_sync.router)
router.include_router(identity.router)
router.include_router(organizations.router)
