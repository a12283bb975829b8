from fastapi import APIRouter
from genbuilder.api.routes_health import router as health_router
from genbuilder.api.routes_jobs import router as jobs_router
from genbuilder.api.routes_preview import router as preview_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(jobs_router, tags=["generations"])
router.include_router(preview_router, tags=["preview"])
