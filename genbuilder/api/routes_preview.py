from fastapi import APIRouter, Depends, HTTPException, Response
from genbuilder.api.deps import get_services
from genbuilder.core.errors import WorkspaceNotFoundError
from genbuilder.core.services import BuilderServices
from genbuilder.schemas.jobs import PreviewAcceptedResponse, PreviewStatusResponse

router = APIRouter(prefix="/generations/{generation_id}/preview")

@router.post("", response_model=PreviewAcceptedResponse, status_code=202)
async def start_preview(generation_id: str, services: BuilderServices = Depends(get_services)):
    try:
        workspace = await services.engine.resolve_workspace(generation_id)
    except WorkspaceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    services.preview.start_in_background(generation_id, workspace)
    return PreviewAcceptedResponse()

@router.get("", response_model=PreviewStatusResponse)
def get_preview(generation_id: str, services: BuilderServices = Depends(get_services)):
    status = services.preview.status(generation_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No preview running")
    return PreviewStatusResponse(**status)

@router.delete("", status_code=204)
async def stop_preview(generation_id: str, services: BuilderServices = Depends(get_services)):
    await services.preview.stop(generation_id)
    return Response(status_code=204)
