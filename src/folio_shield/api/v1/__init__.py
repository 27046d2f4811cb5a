"""Version 1 API endpoints."""

from .endpoints import presence_router, system_router, visitors_router

__all__ = [
    "presence_router",
    "system_router",
    "visitors_router",
]
