"""API routers."""

from mosaic.routers.billing import router as billing_router
from mosaic.routers.users import admin_router
from mosaic.routers.users import router as users_router

__all__ = ["billing_router", "users_router", "admin_router"]
