"""
PLC Router

Ad-hoc device access outside the polling loop:
- Read a set of points once
- Write a single register
- Connection check
"""

from fastapi import APIRouter, Depends
from pydantic import Field

from ...services.engine import Engine
from ..dependencies import get_engine
from ..schemas import DeviceTarget

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class ReadRequest(DeviceTarget):
    """Points to read once."""
    points: list[str] = Field(default_factory=list)


class WriteRequest(DeviceTarget):
    """Single register write."""
    point: str
    value: float


# ============================================
# ENDPOINTS
# ============================================

@router.post("/read")
async def read_points(body: ReadRequest, engine: Engine = Depends(get_engine)):
    """
    Read points once.

    Unavailable points are reported under "errors" and as null in
    "values"; they are never replaced by zero.
    """
    key = body.key()
    results = await engine.read_points(key, body.protocol_config(), body.points)
    return {
        "device_key": str(key),
        "values": {p: r.value_or(None) for p, r in results.items()},
        "errors": {p: r.error for p, r in results.items() if not r.ok},
    }


@router.post("/write")
async def write_point(body: WriteRequest, engine: Engine = Depends(get_engine)):
    """Write one register."""
    key = body.key()
    await engine.write_point(key, body.protocol_config(), body.point, body.value)
    return {"status": "written", "device_key": str(key), "point": body.point, "value": body.value}


@router.post("/check")
async def check_connection(body: DeviceTarget, engine: Engine = Depends(get_engine)):
    """Try to connect and report the result."""
    return await engine.check_connection(body.key(), body.protocol_config())
