"""
Energy Router

Daily energy rows (24 hourly values per date):
- Single day, date range and 30-day summary
- Today's in-memory row
- Hourly accumulator polling control

Store-backed endpoints are plain functions and run in the threadpool.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...common.config import DEFAULT_ENERGY_POINT
from ...services.engine import Engine
from ..dependencies import get_engine
from ..schemas import DeviceTarget

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class HourlyStart(DeviceTarget):
    """Start hourly accumulator polling."""
    point: str = DEFAULT_ENERGY_POINT


# ============================================
# ENDPOINTS
# ============================================

@router.get("/day/{date}")
def day_data(date: str, engine: Engine = Depends(get_engine)):
    """One date's 24 hourly values."""
    row = engine.get_day_data(date)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No energy data for {date}",
        )
    return row.to_dict()


@router.get("/range")
def range_data(
    from_date: str = Query(..., alias="from"),
    to_date: str = Query(..., alias="to"),
    engine: Engine = Depends(get_engine),
):
    """Stored rows in [from, to]; dates without a row are omitted."""
    rows = engine.get_date_range_data(from_date, to_date)
    return {"from": from_date, "to": to_date, "data": [r.to_dict() for r in rows]}


@router.get("/summary")
def summary(engine: Engine = Depends(get_engine)):
    """Today, last 7 days and last 30 days totals with a zero-filled daily series."""
    return engine.get_energy_summary()


@router.get("/today")
async def today(engine: Engine = Depends(get_engine)):
    return (await engine.get_current_day()).to_dict()


@router.post("/hourly/start")
async def start_hourly(body: HourlyStart, engine: Engine = Depends(get_engine)):
    """Start (or restart) hourly accumulator polling; polls once right away."""
    key = body.key()
    ok = await engine.start_hourly_energy(key, body.protocol_config(), body.point)
    return {"status": "started", "device_key": str(key), "first_poll_ok": ok}


@router.post("/hourly/stop")
async def stop_hourly(engine: Engine = Depends(get_engine)):
    engine.stop_hourly_energy()
    return {"status": "stopped"}
