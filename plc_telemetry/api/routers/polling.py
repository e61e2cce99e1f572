"""
Polling Router

Background polling management:
- Register / stop device polling
- Latest snapshots and in-memory history
- Polling statistics
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field

from ...common.config import Protocol, ProtocolConfig
from ...services.engine import Engine, make_key
from ..dependencies import get_engine
from ..schemas import DeviceTarget

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class PollingRegistration(DeviceTarget):
    """Start polling a device."""
    points: list[str] = Field(default_factory=list)
    interval_ms: int = 2000


# ============================================
# ENDPOINTS
# ============================================

@router.post("/register", status_code=status.HTTP_200_OK)
async def register_polling(
    body: PollingRegistration,
    engine: Engine = Depends(get_engine),
):
    """
    Start background polling for a device.

    Registering an already polled device is a no-op; the first
    registration's points and interval stay in effect.
    """
    config = body.protocol_config()
    started = await engine.register_polling(
        body.host, body.port, body.points, body.interval_ms, config
    )
    key = make_key(body.host, body.port, config)
    return {
        "status": "registered" if started else "already_registered",
        "device_key": str(key),
    }


@router.post("/stop")
async def stop_polling(body: DeviceTarget, engine: Engine = Depends(get_engine)):
    """Stop polling a device."""
    key = body.key()
    stopped = await engine.stop_polling(key)
    return {"stopped": stopped, "device_key": str(key)}


@router.post("/poll-now")
async def poll_now(body: DeviceTarget, engine: Engine = Depends(get_engine)):
    """Run one poll immediately and return the new snapshot."""
    snapshot = await engine.poll_now(body.key())
    return snapshot.to_dict()


@router.get("/status")
async def polling_status(engine: Engine = Depends(get_engine)):
    """Statistics for every polled device, connections and hourly energy."""
    return engine.get_polling_status()


@router.get("/snapshots")
async def all_snapshots(engine: Engine = Depends(get_engine)):
    return {
        key: snapshot.to_dict()
        for key, snapshot in engine.get_all_snapshots().items()
    }


@router.get("/snapshot")
async def get_snapshot(
    host: Optional[str] = None,
    port: Optional[int] = None,
    protocol: Protocol = Protocol.MC,
    engine: Engine = Depends(get_engine),
):
    """Latest cached read for one device."""
    key = make_key(host, port, ProtocolConfig(protocol=protocol))
    snapshot = engine.get_snapshot(key)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No polling data for {key}",
        )
    return {"device_key": str(key), **snapshot.to_dict()}


@router.get("/history/{point_id}")
async def recent_history(
    point_id: str,
    host: Optional[str] = None,
    port: Optional[int] = None,
    protocol: Protocol = Query(Protocol.MC),
    engine: Engine = Depends(get_engine),
):
    """Most recent in-memory samples of a point (no database access)."""
    key = make_key(host, port, ProtocolConfig(protocol=protocol)) if host else None
    history = engine.get_recent_history(point_id, key)
    return {"point_id": point_id, "data": [h.to_dict() for h in history]}
