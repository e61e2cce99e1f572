"""
API Dependencies

The Engine lives on app.state; routes receive it through Depends(get_engine).
"""

from fastapi import Request

from ..services.engine import Engine


def get_engine(request: Request) -> Engine:
    """
    FastAPI dependency returning the application's Engine.

    Usage:
        @router.get("/x")
        async def my_route(engine: Engine = Depends(get_engine)):
            ...
    """
    return request.app.state.engine
