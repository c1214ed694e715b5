from .admin import router as admin_router
from .ingress import router as ingress_router

__all__ = ["admin_router", "ingress_router"]
