"""
API Routers

Admin endpoints of the Customer Intelligence Engine.
"""

from .ai import router as ai_router
from .customers import router as customers_router
from .segments import router as segments_router

__all__ = [
    "ai_router",
    "customers_router",
    "segments_router",
]
