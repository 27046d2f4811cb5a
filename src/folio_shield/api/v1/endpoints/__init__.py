"""API endpoint modules for version 1."""

from .presence import router as presence_router
from .system import router as system_router
from .visitors import router as visitors_router

__all__ = [
    "presence_router",
    "system_router",
    "visitors_router",
]
