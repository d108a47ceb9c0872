from __future__ import annotations
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from optimizer_intelligence.api.deps import get_services
from optimizer_intelligence.services import PipelineServices

router = APIRouter(prefix="/apps", tags=["apps"])


class AppSupportIn(BaseModel):
    app_id: str = Field(min_length=1, max_length=128)
    app_name: str = Field(min_length=1, max_length=256)
    user_count: int = Field(0, ge=0)
    avg_memory_usage_mb: float = Field(0.0, ge=0)
    created_by: str | None = None


@router.post("")
def build_app_support(body: AppSupportIn, services: PipelineServices = Depends(get_services)):
    return services.apps.build(body.app_id, body.app_name, body.user_count, body.avg_memory_usage_mb, body.created_by)


@router.get("")
def list_apps(services: PipelineServices = Depends(get_services)):
    return {"apps": services.apps.list_apps()}
