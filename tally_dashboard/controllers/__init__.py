# Controllers Package
# HTTP control surface

from .sync_controller import router as sync_router
from .voucher_controller import router as voucher_router
from .health_controller import router as health_router

__all__ = [
    "sync_router",
    "voucher_router",
    "health_router"
]
