"""
Database Router

Store maintenance: statistics, retention cleanup, reset and demo seeding.

Endpoints are plain functions: FastAPI runs them in its threadpool, so
SQLite work stays off the event loop.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...services.engine import Engine
from ..dependencies import get_engine

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class CleanupRequest(BaseModel):
    """Delete raw samples older than `days`."""
    days: int = Field(7, ge=1, le=365)


class ResetRequest(BaseModel):
    """Clear the store; optionally seed demo energy rows."""
    seed_days: int = Field(0, ge=0, le=365)


class SeedRequest(BaseModel):
    days: int = Field(30, ge=1, le=365)


# ============================================
# ENDPOINTS
# ============================================

@router.get("/stats")
def stats(engine: Engine = Depends(get_engine)):
    return engine.get_storage_stats()


@router.post("/cleanup")
def cleanup(body: CleanupRequest, engine: Engine = Depends(get_engine)):
    deleted = engine.cleanup_older_than(body.days)
    return {"deleted": deleted, "days": body.days}


@router.post("/reset")
def reset(body: ResetRequest, engine: Engine = Depends(get_engine)):
    return engine.reset_storage(body.seed_days)


@router.post("/seed")
def seed(body: SeedRequest, engine: Engine = Depends(get_engine)):
    dates = engine.seed_demo_days(body.days)
    return {"seeded": len(dates), "dates": dates}
