from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from ..services.access_keys import AccessKeyNotFound
from ..services.manager_service import ManagerService

router = APIRouter(tags=["management"])


class NameRequest(BaseModel):
    name: str = Field(min_length=1)


class MetricsEnabledRequest(BaseModel):
    metricsEnabled: bool


def get_manager_service(request: Request) -> ManagerService:
    return request.app.state.manager_service


@router.get("/server")
async def get_server(service: ManagerService = Depends(get_manager_service)):
    return service.get_server()


@router.put("/name", status_code=status.HTTP_204_NO_CONTENT)
async def rename_server(body: NameRequest, service: ManagerService = Depends(get_manager_service)):
    service.rename_server(body.name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/access-keys")
async def list_access_keys(service: ManagerService = Depends(get_manager_service)):
    return {"accessKeys": service.list_access_keys()}


@router.post("/access-keys", status_code=status.HTTP_201_CREATED)
async def create_access_key(service: ManagerService = Depends(get_manager_service)):
    return service.create_access_key()


@router.delete("/access-keys/{access_key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_access_key(access_key_id: str, service: ManagerService = Depends(get_manager_service)):
    try:
        service.remove_access_key(access_key_id)
    except AccessKeyNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/access-keys/{access_key_id}/name", status_code=status.HTTP_204_NO_CONTENT)
async def rename_access_key(
    access_key_id: str, body: NameRequest, service: ManagerService = Depends(get_manager_service)
):
    try:
        service.rename_access_key(access_key_id, body.name)
    except AccessKeyNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/metrics/transfer")
async def get_data_usage(service: ManagerService = Depends(get_manager_service)):
    return service.get_data_usage()


@router.get("/metrics/enabled")
async def get_metrics_enabled(service: ManagerService = Depends(get_manager_service)):
    return {"metricsEnabled": service.get_metrics_enabled()}


@router.put("/metrics/enabled", status_code=status.HTTP_204_NO_CONTENT)
async def set_metrics_enabled(
    body: MetricsEnabledRequest, service: ManagerService = Depends(get_manager_service)
):
    service.set_metrics_enabled(body.metricsEnabled)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
