"""
Router registry: imports and exports all API routers.
"""
from routers.hello import router as hello_router
from routers.health import router as health_router

all_routers = [
    health_router,
    hello_router,
]
