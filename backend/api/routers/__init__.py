"""API Routers package

This package contains all API route handlers.
Routers are organized by feature domain.
"""

from . import nightbot_router

__all__ = [
    "nightbot_router",
]
