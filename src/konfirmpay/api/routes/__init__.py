"""API routes."""

from konfirmpay.api.routes.callbacks import router as callbacks_router
from konfirmpay.api.routes.health import router as health_router
from konfirmpay.api.routes.verification import router as verification_router

__all__ = ["callbacks_router", "health_router", "verification_router"]
