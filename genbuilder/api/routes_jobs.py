import logging
from fastapi import APIRouter, Depends, HTTPException
from genbuilder.api.deps import get_services
from genbuilder.core.errors import JobAlreadyRunningError, RecordNotFoundError, WorkspaceNotFoundError
from genbuilder.core.logging import job_extra
from genbuilder.core.services import BuilderServices
from genbuilder.db.store import GenerationRecord
from genbuilder.schemas.jobs import (
    CancelResponse,
    GenerationCreateRequest,
    GenerationResponse,
    IterationCreateRequest,
    IterationResponse,
)
from genbuilder.core.workflow import STAGE_MESSAGES, JobStatus

log = logging.getLogger(__name__)

router = APIRouter(prefix="/generations")

def _to_response(record: GenerationRecord) -> GenerationResponse:
    return GenerationResponse(
        id=record.id,
        status=record.status,
        current_stage=record.current_stage,
        current_detail=record.current_detail,
        message=STAGE_MESSAGES.get(record.current_stage),
        title=record.title,
        description=record.description,
        error=record.error,
    )

@router.post("", response_model=GenerationResponse, status_code=202)
async def create_generation(req: GenerationCreateRequest, services: BuilderServices = Depends(get_services)):
    if req.generation_id:
        record = await services.store.get_generation(req.generation_id)
        if record is None:
            record = await services.store.create_generation(req.prompt, job_id=req.generation_id)
    else:
        record = await services.store.create_generation(req.prompt)

    context = req.business_context.to_context() if req.business_context else None
    try:
        services.engine.submit_generation(record.id, req.prompt, context)
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    log.info("Generation accepted", extra=job_extra(record.id))
    return _to_response(record)

@router.get("/{generation_id}", response_model=GenerationResponse)
async def get_generation(generation_id: str, services: BuilderServices = Depends(get_services)):
    record = await services.store.get_generation(generation_id)
    if not record:
        raise HTTPException(status_code=404, detail="Generation not found")
    return _to_response(record)

@router.post("/{generation_id}/iterations", response_model=IterationResponse, status_code=202)
async def create_iteration(
    generation_id: str,
    req: IterationCreateRequest,
    services: BuilderServices = Depends(get_services),
):
    try:
        await services.engine.resolve_workspace(generation_id)
        if services.registry.is_active(generation_id):
            raise JobAlreadyRunningError(f"Job {generation_id} is already running")
        iteration_id = await services.store.create_iteration(generation_id, req.prompt, req.iteration_id)
        await services.engine.submit_iteration(generation_id, iteration_id, req.prompt)
    except (WorkspaceNotFoundError, RecordNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return IterationResponse(id=iteration_id, generation_id=generation_id, status=JobStatus.PENDING)

@router.post("/{generation_id}/cancel", response_model=CancelResponse)
async def cancel_generation(generation_id: str, services: BuilderServices = Depends(get_services)):
    cancelled = services.engine.cancel_generation(generation_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail="No running job for this generation")
    return CancelResponse(id=generation_id, cancelled=True)
