from __future__ import annotations
from fastapi import APIRouter, Body, Depends
from typing import List
from optimizer_intelligence.api.deps import get_services
from optimizer_intelligence.services import PipelineServices
from optimizer_intelligence.tasks.ingestion import ingest_telemetry_batch

router = APIRouter(prefix="/telemetry", tags=["telemetry"])


@router.post("")
def ingest(payload: dict = Body(...), services: PipelineServices = Depends(get_services)):
    """Accepts one session record; a repeated session id answers ``duplicate`` and changes nothing."""
    return services.ingestor.ingest(payload)


@router.post("/batch")
def ingest_batch(payloads: List[dict] = Body(...), services: PipelineServices = Depends(get_services)):
    # No broker in tests: run the task body inline.
    if services.settings.app_env == "test":
        result = ingest_telemetry_batch(payloads)
        return {"queued": len(payloads), "task_id": None, "result": result}
    task = ingest_telemetry_batch.delay(payloads)
    return {"queued": len(payloads), "task_id": task.id}


@router.get("/analytics")
def analytics(services: PipelineServices = Depends(get_services)):
    return services.queries.analytics()


@router.get("/benchmarks")
def benchmark_analytics(services: PipelineServices = Depends(get_services)):
    return services.validator.analytics()
