"""Strategy update registry: proposal, review, rollback and the review queues."""
from __future__ import annotations
from datetime import datetime
from typing import Callable
import logging
import json
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from optimizer_intelligence.approval import state_machine
from optimizer_intelligence.approval.gating import GatingPolicy
from optimizer_intelligence.approval.proposals import parse_proposal, resolve_defaults
from optimizer_intelligence.approval.rollout import (
    active_canary,
    canary_to_dict,
    create_canary,
    write_log,
    append_note,
)
from optimizer_intelligence.errors import GatingFailedError, InvalidTransitionError, ValidationFailedError
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.infrastructure.metrics import STRATEGY_TRANSITIONS_REJECTED, CANARY_EVENTS
from optimizer_intelligence.models.tables import (
    DeploymentLog,
    StrategyUpdate,
    CANARY_ABORTED,
    STATUS_PENDING,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_TESTING,
    STATUS_DEPLOYED,
    STATUS_ROLLED_BACK,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"
_DECISIONS = {"approve": APPROVE, "approved": APPROVE, "reject": REJECT, "rejected": REJECT}


def update_to_dict(u: StrategyUpdate) -> dict:
    return {
        "id": u.id,
        "app_id": u.app_id,
        "strategy_type": u.strategy_type,
        "update_type": u.update_type,
        "version": u.version,
        "base_strategy_version": u.base_strategy_version,
        "update_data": u.update_data,
        "estimated_impact": u.estimated_impact,
        "sample_size": u.sample_size,
        "confidence_score": u.confidence_score,
        "statistical_significance": u.statistical_significance,
        "consistency_period_days": u.consistency_period_days,
        "risk_level": u.risk_level,
        "safety_score": u.safety_score,
        "potential_issues": u.potential_issues,
        "status": u.status,
        "reviewed_by": u.reviewed_by,
        "reviewed_at": u.reviewed_at.isoformat() if u.reviewed_at else None,
        "approval_notes": u.approval_notes,
        "supersedes_update_id": u.supersedes_update_id,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


class StrategyUpdateRegistry:
    def __init__(self, session_factory: Callable[[], Session] | None = None, policy: GatingPolicy | None = None,
                 phase_duration_hours: int = 48):
        self.session_factory = session_factory
        self.policy = policy or GatingPolicy()
        self.phase_duration_hours = phase_duration_hours

    def propose(self, payload: dict) -> dict:
        proposal = parse_proposal(payload)
        values = resolve_defaults(proposal)
        try:
            with session_scope(self.session_factory) as session:
                if proposal.supersedes_update_id is not None:
                    prev = state_machine.get_update(session, proposal.supersedes_update_id)
                    if prev.status not in TERMINAL_STATUSES:
                        raise InvalidTransitionError(
                            f"update {prev.id} is '{prev.status}'; only rejected or rolled back updates can be superseded",
                            current_status=prev.status,
                        )
                taken = session.scalar(select(StrategyUpdate.id).where(
                    StrategyUpdate.app_id == values["app_id"],
                    StrategyUpdate.strategy_type == values["strategy_type"],
                    StrategyUpdate.version == values["version"],
                ))
                if taken is not None:
                    raise ValidationFailedError(f"version '{values['version']}' already used for this strategy")
                now = datetime.utcnow()
                row = StrategyUpdate(status=STATUS_PENDING, created_at=now, updated_at=now, **values)
                session.add(row)
                session.flush()
                out = update_to_dict(row)
        except IntegrityError as exc:
            raise ValidationFailedError(f"version '{values['version']}' already used for this strategy") from exc
        logger.info(json.dumps({"event": "strategy_update_proposed", "id": out["id"], "app_id": out["app_id"],
                                "risk_level": out["risk_level"]}))
        return out

    def get(self, update_id: int) -> dict:
        with session_scope(self.session_factory) as session:
            upd = state_machine.get_update(session, update_id)
            out = update_to_dict(upd)
            out["ab_tests"] = [canary_to_dict(t) for t in upd.ab_tests]
            logs = session.scalars(
                select(DeploymentLog).where(DeploymentLog.strategy_update_id == update_id).order_by(DeploymentLog.id)
            ).all()
            out["deployment_logs"] = [
                {"level": l.log_level, "message": l.log_message, "data": l.log_data, "phase": l.deployment_phase,
                 "user_percentage": l.user_percentage, "created_at": l.created_at.isoformat()}
                for l in logs
            ]
            return out

    def review(self, update_id: int, decision: str, reviewer: str, notes: str | None = None,
               deployment_phase: str | None = None) -> dict:
        normalized = _DECISIONS.get((decision or "").lower())
        if normalized is None:
            raise ValidationFailedError("decision must be 'approve' or 'reject'")
        if not reviewer:
            raise ValidationFailedError("reviewer is required")
        with session_scope(self.session_factory) as session:
            upd = state_machine.get_update(session, update_id)
            audit = {"reviewed_by": reviewer, "reviewed_at": datetime.utcnow(), "approval_notes": notes}
            canary = None
            if normalized == APPROVE:
                if upd.status != STATUS_PENDING:
                    STRATEGY_TRANSITIONS_REJECTED.labels(reason="not_allowed").inc()
                    raise InvalidTransitionError(f"cannot approve a '{upd.status}' update", current_status=upd.status)
                failed = self.policy.failed_checks(upd)
                if failed:
                    STRATEGY_TRANSITIONS_REJECTED.labels(reason="gating").inc()
                    logger.info(json.dumps({"event": "gating_failed", "id": update_id,
                                            "checks": [c["name"] for c in failed]}))
                    raise GatingFailedError(failed, current_status=upd.status)
                previous = state_machine.transition(session, update_id, STATUS_PENDING, STATUS_APPROVED, **audit)
                upd = state_machine.get_update(session, update_id)
                canary = canary_to_dict(create_canary(session, upd, deployment_phase, self.phase_duration_hours))
            else:
                previous = state_machine.transition(session, update_id, STATUS_PENDING, STATUS_REJECTED, **audit)
            return {"id": update_id, "status": STATUS_APPROVED if normalized == APPROVE else STATUS_REJECTED,
                    "previous_status": previous, "ab_test": canary}

    def rollback(self, update_id: int, reason: str, emergency: bool = False, actor: str | None = None) -> dict:
        if not reason or not reason.strip():
            raise ValidationFailedError("rollback reason is required")
        now = datetime.utcnow()
        with session_scope(self.session_factory) as session:
            previous = state_machine.transition(session, update_id, (STATUS_TESTING, STATUS_DEPLOYED), STATUS_ROLLED_BACK)
            canary = active_canary(session, update_id)
            if canary is not None:
                canary.status = CANARY_ABORTED
                canary.ended_at = now
                canary.conclusion = "rolled_back"
                canary.user_percentage = 0.0
                CANARY_EVENTS.labels(event="aborted").inc()
            upd = state_machine.get_update(session, update_id)
            upd.approval_notes = append_note(upd.approval_notes, f"ROLLBACK {now.isoformat()}: {reason}")
            upd.updated_at = now
            deployment_type = "emergency_rollback" if emergency else "planned_rollback"
            write_log(
                session, update_id, "critical" if emergency else "warning", f"rollback: {reason}",
                {"deployment_type": deployment_type, "previous_status": previous, "actor": actor},
                ab_test=canary, phase=deployment_type, percentage=0.0,
            )
        log = logger.error if emergency else logger.warning
        log(json.dumps({"event": "strategy_rollback", "id": update_id, "from": previous, "emergency": emergency,
                        "reason": reason}))
        return {"id": update_id, "status": STATUS_ROLLED_BACK, "previous_status": previous,
                "deployment_type": deployment_type}

    def pending(self, limit: int = 50) -> list[dict]:
        with session_scope(self.session_factory) as session:
            rows = session.scalars(
                select(StrategyUpdate)
                .where(StrategyUpdate.status == STATUS_PENDING)
                .order_by(StrategyUpdate.created_at, StrategyUpdate.id)
                .limit(limit)
            ).all()
            return [update_to_dict(r) for r in rows]

    def review_history(self, limit: int = 50, offset: int = 0, reviewer: str | None = None) -> dict:
        with session_scope(self.session_factory) as session:
            q = select(StrategyUpdate).where(StrategyUpdate.reviewed_at.is_not(None))
            if reviewer:
                q = q.where(StrategyUpdate.reviewed_by == reviewer)
            rows = session.scalars(
                q.order_by(StrategyUpdate.reviewed_at.desc(), StrategyUpdate.id.desc()).limit(limit).offset(offset)
            ).all()
            counts = dict(session.execute(
                select(StrategyUpdate.status, func.count(StrategyUpdate.id))
                .where(StrategyUpdate.reviewed_at.is_not(None))
                .group_by(StrategyUpdate.status)
            ).all())
            risk = dict(session.execute(
                select(StrategyUpdate.risk_level, func.count(StrategyUpdate.id))
                .where(StrategyUpdate.reviewed_at.is_not(None))
                .group_by(StrategyUpdate.risk_level)
            ).all())
            rejected = counts.get(STATUS_REJECTED, 0)
            return {
                "reviews": [update_to_dict(r) for r in rows],
                "stats": {
                    "total_reviewed": sum(counts.values()),
                    "approved": sum(counts.values()) - rejected,
                    "rejected": rejected,
                    "by_status": counts,
                    "by_risk_level": risk,
                },
            }
