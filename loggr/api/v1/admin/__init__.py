from fastapi import APIRouter, Depends

from loggr.api.v1.auth import admin_required
from loggr.api.v1.dependencies.context import ensure_schema

# Every admin route needs an admin token and gets opportunistic table repair
router = APIRouter(dependencies=[Depends(admin_required), Depends(ensure_schema)])

from loggr.api.v1.admin.error_routes import router as error_admin_router
from loggr.api.v1.admin.ignore_pattern_routes import router as ignore_pattern_admin_router
from loggr.api.v1.admin.settings_routes import router as settings_admin_router
from loggr.api.v1.admin.system_routes import router as system_admin_router

router.include_router(error_admin_router)
router.include_router(ignore_pattern_admin_router)
router.include_router(settings_admin_router)
router.include_router(system_admin_router)
