"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from vigil.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The runtime built during application startup."""
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
