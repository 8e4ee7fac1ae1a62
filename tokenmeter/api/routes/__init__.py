"""
tokenmeter - API Routes

Route modules for different API endpoints.
"""

from .usage import router as usage_router
from .metering import router as metering_router
from .admin import router as admin_router

__all__ = [
    "usage_router",
    "metering_router",
    "admin_router",
]
