from fastapi import APIRouter
from loggr.api.v1.ajax_routes import router as ajax_router
from loggr.api.v1.admin import router as admin_package_router
from loggr.api.v1.auth import router as auth_router
from loggr.api.v1.auth_event_routes import router as auth_event_router
from loggr.api.v1.client_routes import router as client_router

# Create main router for v1 API
router = APIRouter()

# Include all routes
router.include_router(ajax_router)
router.include_router(client_router)
router.include_router(auth_router)
router.include_router(auth_event_router)
router.include_router(admin_package_router, prefix="/api/v1/admin")
