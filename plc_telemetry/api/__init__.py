"""
HTTP API

- app.py - FastAPI application factory
- routers/ - polling, plc, data, energy and db endpoints
"""

from .app import create_app

__all__ = ["create_app"]
