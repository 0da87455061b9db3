"""
FastAPI routers for the patch and render service.
"""

from framepatch.routers import health, patches, renders

__all__ = ["health", "patches", "renders"]
