from __future__ import annotations
from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field
from optimizer_intelligence.api.deps import get_services
from optimizer_intelligence.services import PipelineServices

router = APIRouter(prefix="/approval", tags=["approval"])


class ReviewIn(BaseModel):
    decision: str
    reviewer: str = Field(min_length=1, max_length=128)
    notes: str | None = None
    deployment_phase: str | None = None


class RollbackIn(BaseModel):
    reason: str = Field(min_length=1)
    emergency: bool = False
    actor: str | None = None


class CanaryActionIn(BaseModel):
    action: str
    results: dict | None = None
    actor: str | None = None


class CanaryCreateIn(BaseModel):
    deployment_phase: str | None = None


@router.post("/updates")
def propose(payload: dict = Body(...), services: PipelineServices = Depends(get_services)):
    return services.registry.propose(payload)


@router.get("/updates/pending")
def pending(limit: int = Query(50, ge=1, le=500), services: PipelineServices = Depends(get_services)):
    rows = services.registry.pending(limit)
    return {"count": len(rows), "updates": rows}


@router.get("/updates/{update_id}")
def get_update(update_id: int, services: PipelineServices = Depends(get_services)):
    return services.registry.get(update_id)


@router.post("/updates/{update_id}/review")
def review(update_id: int, body: ReviewIn, services: PipelineServices = Depends(get_services)):
    return services.registry.review(update_id, body.decision, body.reviewer, body.notes, body.deployment_phase)


@router.post("/updates/{update_id}/rollback")
def rollback(update_id: int, body: RollbackIn, services: PipelineServices = Depends(get_services)):
    return services.registry.rollback(update_id, body.reason, body.emergency, body.actor)


@router.post("/updates/{update_id}/canary")
def create_canary(update_id: int, body: CanaryCreateIn | None = None, services: PipelineServices = Depends(get_services)):
    return services.rollout.create(update_id, body.deployment_phase if body else None)


@router.post("/canaries/{ab_test_id}")
def canary_action(ab_test_id: int, body: CanaryActionIn, services: PipelineServices = Depends(get_services)):
    return services.rollout.canary_action(ab_test_id, body.action, body.results, body.actor)


@router.get("/history")
def history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    reviewer: str | None = None,
    services: PipelineServices = Depends(get_services),
):
    return services.registry.review_history(limit, offset, reviewer)
