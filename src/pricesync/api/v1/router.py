"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.pricesync.api.v1 import sync

router = APIRouter()

router.include_router(sync.router)
