from gateway_app.routers.billing_api import router as billing_router
from gateway_app.routers.gateway_api import router as gateway_router

__all__ = ["gateway_router", "billing_router"]
