"""Canary runs: creation on approval, phase progression, completion and abort.

A canary run owns its own status (ready -> running -> completed | aborted) guarded by the same
conditional-write discipline as strategy updates. Completing or aborting a running canary moves
the parent update out of ``testing`` through ``state_machine.transition``; the orchestrator never
touches the parent's evidence fields.
"""
from __future__ import annotations
from datetime import datetime
from typing import Callable
import logging
import json
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from optimizer_intelligence.approval import state_machine
from optimizer_intelligence.errors import ConflictingCanaryError, InvalidTransitionError, NotFoundError, ValidationFailedError
from optimizer_intelligence.infrastructure.db import session_scope
from optimizer_intelligence.infrastructure.metrics import CANARY_EVENTS
from optimizer_intelligence.models.tables import (
    ABTest,
    DeploymentLog,
    StrategyUpdate,
    ACTIVE_CANARY_STATUSES,
    CANARY_READY,
    CANARY_RUNNING,
    CANARY_COMPLETED,
    CANARY_ABORTED,
    STATUS_APPROVED,
    STATUS_TESTING,
    STATUS_DEPLOYED,
    STATUS_ROLLED_BACK,
)

logger = logging.getLogger(__name__)

ROLLOUT_PHASES = [0.001, 0.01, 0.1, 0.5, 1.0]
SUCCESS_THRESHOLDS = {"effectiveness": 0.8, "user_satisfaction": 0.75, "stability": 0.95}
ROLLBACK_TRIGGERS = {
    "crash_rate": {"op": "gt", "value": 0.01},
    "user_satisfaction": {"op": "lt", "value": 0.6},
    "effectiveness": {"op": "lt", "value": 0.5},
}
DEFAULT_DEPLOYMENT_LABEL = "beta"
CANARY_ACTIONS = ("start", "advance", "stop", "abort")


def deployment_phase_for(percentage: float) -> str:
    if percentage <= 0.001:
        return "canary"
    if percentage <= 0.01:
        return "limited"
    if percentage <= 0.5:
        return "gradual"
    return "full"


def evaluate_results(results: dict | None, thresholds: dict, triggers: dict) -> tuple[bool, list[str]]:
    """Clean when no rollback trigger fires and every reported metric meets its success threshold."""
    results = results or {}
    reasons = []
    for metric, rule in triggers.items():
        if metric not in results or results[metric] is None:
            continue
        value = results[metric]
        if (rule["op"] == "gt" and value > rule["value"]) or (rule["op"] == "lt" and value < rule["value"]):
            reasons.append(f"rollback_trigger:{metric}")
    for metric, minimum in thresholds.items():
        if metric in results and results[metric] is not None and results[metric] < minimum:
            reasons.append(f"below_threshold:{metric}")
    return not reasons, reasons


def write_log(session: Session, update_id: int, level: str, message: str, data: dict | None = None,
              ab_test: ABTest | None = None, phase: str | None = None, percentage: float | None = None):
    session.add(DeploymentLog(
        strategy_update_id=update_id,
        ab_test_id=ab_test.id if ab_test is not None else None,
        log_level=level,
        log_message=message,
        log_data=data or {},
        deployment_phase=phase if phase is not None else (ab_test.deployment_phase if ab_test is not None else None),
        user_percentage=percentage if percentage is not None else (ab_test.user_percentage if ab_test is not None else None),
        created_at=datetime.utcnow(),
    ))


def active_canary(session: Session, update_id: int) -> ABTest | None:
    return session.scalar(
        select(ABTest).where(ABTest.strategy_update_id == update_id, ABTest.status.in_(ACTIVE_CANARY_STATUSES))
    )


def create_canary(session: Session, upd: StrategyUpdate, deployment_phase: str | None = None,
                  phase_duration_hours: int = 48) -> ABTest:
    if active_canary(session, upd.id) is not None:
        raise ConflictingCanaryError(f"strategy update {upd.id} already has an active canary run")
    test = ABTest(
        strategy_update_id=upd.id,
        test_name=f"{upd.app_id}_{upd.strategy_type}_{upd.version}",
        test_description=f"Canary for {upd.update_type} in {upd.app_id}",
        deployment_phase=deployment_phase or DEFAULT_DEPLOYMENT_LABEL,
        rollout_phases=list(ROLLOUT_PHASES),
        current_phase=0,
        user_percentage=ROLLOUT_PHASES[0],
        phase_duration_hours=phase_duration_hours,
        success_thresholds=dict(SUCCESS_THRESHOLDS),
        rollback_triggers={k: dict(v) for k, v in ROLLBACK_TRIGGERS.items()},
        status=CANARY_READY,
        created_at=datetime.utcnow(),
    )
    session.add(test)
    try:
        session.flush()
    except IntegrityError as exc:
        # the partial unique index caught a concurrent creation
        raise ConflictingCanaryError(f"strategy update {upd.id} already has an active canary run") from exc
    write_log(session, upd.id, "info", "canary run created", {"test_name": test.test_name}, ab_test=test)
    CANARY_EVENTS.labels(event="created").inc()
    return test


def canary_to_dict(t: ABTest) -> dict:
    return {
        "id": t.id,
        "strategy_update_id": t.strategy_update_id,
        "test_name": t.test_name,
        "status": t.status,
        "deployment_phase": t.deployment_phase,
        "rollout_phases": t.rollout_phases,
        "current_phase": t.current_phase,
        "user_percentage": t.user_percentage,
        "phase_duration_hours": t.phase_duration_hours,
        "success_thresholds": t.success_thresholds,
        "rollback_triggers": t.rollback_triggers,
        "results": t.results,
        "conclusion": t.conclusion,
        "started_at": t.started_at.isoformat() if t.started_at else None,
        "ended_at": t.ended_at.isoformat() if t.ended_at else None,
    }


def _cas_canary(session: Session, test: ABTest, expected: tuple[str, ...], **values):
    res = session.execute(
        update(ABTest)
        .where(ABTest.id == test.id, ABTest.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        current = session.scalar(select(ABTest.status).where(ABTest.id == test.id))
        raise InvalidTransitionError(f"canary run {test.id} is '{current}'", current_status=current)
    session.expire(test)


class RolloutOrchestrator:
    def __init__(self, session_factory: Callable[[], Session] | None = None, phase_duration_hours: int = 48):
        self.session_factory = session_factory
        self.phase_duration_hours = phase_duration_hours

    def create(self, update_id: int, deployment_phase: str | None = None) -> dict:
        """Open a new canary run for an approved update whose previous run was aborted before start."""
        with session_scope(self.session_factory) as session:
            upd = state_machine.get_update(session, update_id)
            if upd.status != STATUS_APPROVED:
                raise InvalidTransitionError(f"cannot open a canary for a '{upd.status}' update", current_status=upd.status)
            test = create_canary(session, upd, deployment_phase, self.phase_duration_hours)
            return canary_to_dict(test)

    def canary_action(self, ab_test_id: int, action: str, results: dict | None = None, actor: str | None = None) -> dict:
        if action not in CANARY_ACTIONS:
            raise ValidationFailedError(f"unknown canary action '{action}'")
        with session_scope(self.session_factory) as session:
            test = session.get(ABTest, ab_test_id)
            if test is None:
                raise NotFoundError(f"canary run {ab_test_id} not found")
            if action == "start":
                self._start(session, test, actor)
            elif action == "advance":
                self._advance(session, test, results, actor)
            elif action == "stop":
                self._finish(session, test, results, actor)
            else:
                self._abort(session, test, "aborted by operator", actor)
            session.refresh(test)
            upd_status = session.scalar(select(StrategyUpdate.status).where(StrategyUpdate.id == test.strategy_update_id))
            out = canary_to_dict(test)
            out["strategy_update_status"] = upd_status
            return out

    def _start(self, session: Session, test: ABTest, actor: str | None):
        other = session.scalar(
            select(ABTest.id).where(ABTest.strategy_update_id == test.strategy_update_id,
                                    ABTest.status == CANARY_RUNNING, ABTest.id != test.id)
        )
        if other is not None:
            raise ConflictingCanaryError(f"canary run {other} is already running for this update")
        first = test.rollout_phases[0] if test.rollout_phases else ROLLOUT_PHASES[0]
        phase = deployment_phase_for(first)
        _cas_canary(session, test, (CANARY_READY,), status=CANARY_RUNNING, started_at=datetime.utcnow(),
                    current_phase=0, user_percentage=first, deployment_phase=phase)
        state_machine.transition(session, test.strategy_update_id, STATUS_APPROVED, STATUS_TESTING)
        write_log(session, test.strategy_update_id, "info", "canary run started", {"actor": actor},
                  ab_test=test, phase=phase, percentage=first)
        CANARY_EVENTS.labels(event="started").inc()

    def _advance(self, session: Session, test: ABTest, results: dict | None, actor: str | None):
        if test.status != CANARY_RUNNING:
            raise InvalidTransitionError(f"canary run {test.id} is '{test.status}'", current_status=test.status)
        phases = test.rollout_phases or ROLLOUT_PHASES
        nxt = test.current_phase + 1
        if nxt >= len(phases):
            self._finish(session, test, results, actor)
            return
        if results:
            clean, reasons = evaluate_results(results, test.success_thresholds, test.rollback_triggers)
            if not clean:
                self._abort(session, test, "rollback triggered: " + ", ".join(reasons), actor, results)
                return
        pct = phases[nxt]
        phase = deployment_phase_for(pct)
        res = session.execute(
            update(ABTest)
            .where(ABTest.id == test.id, ABTest.status == CANARY_RUNNING, ABTest.current_phase == test.current_phase)
            .values(current_phase=nxt, user_percentage=pct, deployment_phase=phase)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            current = session.scalar(select(ABTest.status).where(ABTest.id == test.id))
            raise InvalidTransitionError(f"canary run {test.id} changed concurrently", current_status=current)
        session.expire(test)
        write_log(session, test.strategy_update_id, "info", f"canary advanced to {pct:.1%}",
                  {"phase": nxt, "actor": actor}, ab_test=test, phase=phase, percentage=pct)
        CANARY_EVENTS.labels(event="advanced").inc()

    def _finish(self, session: Session, test: ABTest, results: dict | None, actor: str | None):
        if test.status != CANARY_RUNNING:
            raise InvalidTransitionError(f"canary run {test.id} is '{test.status}'", current_status=test.status)
        clean, reasons = evaluate_results(results, test.success_thresholds, test.rollback_triggers)
        if not clean:
            self._abort(session, test, "canary results not clean: " + ", ".join(reasons), actor, results)
            return
        _cas_canary(session, test, (CANARY_RUNNING,), status=CANARY_COMPLETED, ended_at=datetime.utcnow(),
                    results=results or {}, conclusion="successful", user_percentage=1.0, deployment_phase="full")
        state_machine.transition(session, test.strategy_update_id, STATUS_TESTING, STATUS_DEPLOYED)
        write_log(session, test.strategy_update_id, "info", "canary completed; strategy deployed",
                  {"results": results or {}, "actor": actor}, ab_test=test, phase="full", percentage=1.0)
        CANARY_EVENTS.labels(event="completed").inc()

    def _abort(self, session: Session, test: ABTest, reason: str, actor: str | None, results: dict | None = None):
        was_running = test.status == CANARY_RUNNING
        _cas_canary(session, test, ACTIVE_CANARY_STATUSES, status=CANARY_ABORTED, ended_at=datetime.utcnow(),
                    results=results, conclusion="aborted", user_percentage=0.0)
        if was_running:
            state_machine.transition(session, test.strategy_update_id, STATUS_TESTING, STATUS_ROLLED_BACK)
            upd = session.get(StrategyUpdate, test.strategy_update_id)
            upd.approval_notes = append_note(upd.approval_notes, f"CANARY ABORTED {datetime.utcnow().isoformat()}: {reason}")
        write_log(session, test.strategy_update_id, "warning", reason, {"actor": actor, "results": results or {}},
                  ab_test=test, percentage=0.0)
        CANARY_EVENTS.labels(event="aborted").inc()
        logger.warning(json.dumps({"event": "canary_aborted", "ab_test_id": test.id, "reason": reason}))


def append_note(existing: str | None, line: str) -> str:
    return f"{existing}\n{line}" if existing else line
