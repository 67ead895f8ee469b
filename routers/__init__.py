from .export_api import router as export_api_router
from .inventory_api import router as inventory_api_router
from .loans_api import router as loans_api_router

ALL_ROUTERS = (
    loans_api_router,
    inventory_api_router,
    export_api_router,
)
