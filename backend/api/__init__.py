from .ingest import router as ingest_router
from .machines import router as machines_router
from .overview import router as overview_router

__all__ = ["ingest_router", "machines_router", "overview_router"]
