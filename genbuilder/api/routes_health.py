from fastapi import APIRouter, Depends
from genbuilder.api.deps import get_services
from genbuilder.core.services import BuilderServices
from genbuilder.schemas.jobs import HealthResponse

router = APIRouter()

@router.get("/health", response_model=HealthResponse)
def health(services: BuilderServices = Depends(get_services)):
    session = services.preview.active
    return HealthResponse(
        active_jobs=services.registry.active_count,
        preview=session.job_id if session else None,
    )
