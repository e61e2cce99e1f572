"""
PLC Telemetry - HTTP API

FastAPI application exposing the polling engine:
- Device polling registration and live snapshots
- Ad-hoc reads, writes and connection checks
- Raw sample queries and range deletes
- Daily energy rows and summaries
- Store maintenance

Serve with any ASGI server using the factory, e.g.
`uvicorn --factory plc_telemetry.api.app:create_app`.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..common.config import EngineSettings
from ..common.exceptions import ConfigError, DeviceError, PlcTelemetryError, StorageError
from ..common.logging_setup import get_service_logger
from ..services.engine import Engine
from .routers import data, db, energy, plc, polling

logger = get_service_logger("api")


# ============================================
# ENVIRONMENT CONFIGURATION
# ============================================

# Comma-separated list, e.g. PLC_TELEMETRY_ALLOWED_ORIGINS=http://panel.local:3000
DEFAULT_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _allowed_origins() -> list[str]:
    raw = os.getenv("PLC_TELEMETRY_ALLOWED_ORIGINS", "")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or list(DEFAULT_ORIGINS)


# ============================================
# ERROR MAPPING
# ============================================

def _error_body(exc: PlcTelemetryError) -> dict:
    body = {"detail": exc.message, "recoverable": exc.recoverable}
    for attr in ("field", "device_key", "point_id", "operation"):
        value = getattr(exc, attr, None)
        if value is not None:
            body[attr] = str(value)
    return body


async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))


async def _device_error_handler(request: Request, exc: DeviceError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=_error_body(exc))


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(exc),
    )


# ============================================
# CREATE APPLICATION
# ============================================

def create_app(engine: Engine | None = None, settings: EngineSettings | None = None) -> FastAPI:
    """
    Build the API around an engine.

    The engine is started on application startup and stopped on
    shutdown. When none is given, one is built from `settings`
    (or from the environment).
    """
    engine = engine or Engine(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting PLC telemetry API v{__version__}")
        await engine.start()

        yield

        logger.info("Shutting down API...")
        await engine.stop()

    app = FastAPI(
        title="PLC Telemetry API",
        description="""
        Polling engine and time-series store for industrial controllers.

        ## Protocols
        - **mc**: MELSEC MC protocol, 3E binary frame
        - **modbus**: Modbus TCP holding registers
        - **demo**: in-memory simulated controller
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ConfigError, _config_error_handler)
    app.add_exception_handler(DeviceError, _device_error_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)

    app.include_router(polling.router, prefix="/api/polling", tags=["Polling"])
    app.include_router(plc.router, prefix="/api/plc", tags=["PLC"])
    app.include_router(data.router, prefix="/api/data", tags=["Data"])
    app.include_router(energy.router, prefix="/api/energy", tags=["Energy"])
    app.include_router(db.router, prefix="/api/db", tags=["Database"])

    @app.get("/", tags=["Health"])
    async def root():
        """Basic API information."""
        return {
            "name": "PLC Telemetry API",
            "version": __version__,
            "status": "running" if engine.running else "stopped",
            "docs": "/docs",
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Engine, polling and store health."""
        status_info = engine.get_polling_status()
        devices = status_info["devices"]
        online = sum(1 for d in devices.values() if d["statistics"]["online"])
        return {
            "status": "healthy" if engine.running else "stopped",
            "devices": len(devices),
            "devices_online": online,
            "connections": status_info["connections"]["total_connections"],
            "version": __version__,
        }

    return app
