from __future__ import annotations
from fastapi import APIRouter, Depends, Query
from optimizer_intelligence.api.deps import get_services
from optimizer_intelligence.errors import PipelineTimeoutError
from optimizer_intelligence.services import PipelineServices

router = APIRouter(prefix="/intelligence", tags=["intelligence"])


@router.get("/latest")
def latest(
    intelligence_type: str | None = Query(None, alias="type", description="global | app_specific | system_profile"),
    key: str | None = None,
    services: PipelineServices = Depends(get_services),
):
    rows = services.queries.latest(intelligence_type, key)
    return {"status": "ok" if rows else "no_data", "intelligence": rows}


@router.get("/update")
def update_feed(
    device_type: str | None = None,
    current_version: str | None = None,
    services: PipelineServices = Depends(get_services),
):
    return services.queries.update_feed(device_type, current_version)


@router.post("/aggregate")
def aggregate(services: PipelineServices = Depends(get_services)):
    out = services.aggregator.run()
    if out["status"] == "timeout":
        raise PipelineTimeoutError("aggregation budget exhausted", **out)
    return out
