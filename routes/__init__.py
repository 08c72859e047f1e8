"""
API route modules.

Each module defines routes for one domain area.
"""

from routes.exchange import router as exchange_router

__all__ = [
    "exchange_router",
]
