"""
Data Router

Raw sample access:
- Query by date range and point
- Point history (time window or last N)
- Known points
- Range delete

Endpoints are plain functions so SQLite work runs in FastAPI's threadpool.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...services.engine import Engine
from ..dependencies import get_engine

router = APIRouter()


@router.get("/query")
def query_samples(
    from_date: str = Query(..., alias="from"),
    to_date: str = Query(..., alias="to"),
    point: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    engine: Engine = Depends(get_engine),
):
    """Samples inside whole local days [from, to]."""
    samples = engine.query_samples(from_date, to_date, point, limit)
    return {
        "from": from_date,
        "to": to_date,
        "point": point,
        "count": len(samples),
        "data": [s.to_dict() for s in samples],
    }


@router.get("/points")
def list_points(engine: Engine = Depends(get_engine)):
    """Points with stored samples or currently polled."""
    return {"points": engine.list_points()}


@router.get("/history/{point_id}")
def point_history(
    point_id: str,
    hours_back: Optional[float] = Query(None, gt=0),
    limit: Optional[int] = Query(None, ge=1),
    engine: Engine = Depends(get_engine),
):
    """Time-ordered history of one point from the store."""
    samples = engine.get_point_history(point_id, hours_back, limit)
    return {"point_id": point_id, "data": [s.to_dict() for s in samples]}


@router.delete("/range")
def delete_range(
    from_date: str = Query(..., alias="from"),
    to_date: str = Query(..., alias="to"),
    point: Optional[str] = None,
    kind: str = "samples",
    engine: Engine = Depends(get_engine),
):
    """
    Delete data between the start of `from` and the end of `to`.

    kind="samples" removes raw samples (optionally for one point),
    kind="daily" removes daily energy rows.
    """
    deleted = engine.delete_by_range(from_date, to_date, point, kind)
    return {"deleted": deleted, "from": from_date, "to": to_date, "point": point, "kind": kind}
