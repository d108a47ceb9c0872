import pytest
from sqlalchemy import select

from optimizer_intelligence.approval.rollout import deployment_phase_for, evaluate_results
from optimizer_intelligence.errors import (
    ConflictingCanaryError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from optimizer_intelligence.models.tables import DeploymentLog
from tests.conftest import CLEAN_RESULTS, make_proposal



def _approved(services):
    upd = services.registry.propose(make_proposal())
    review = services.registry.review(upd["id"], "approve", "alice")
    return upd["id"], review["ab_test"]["id"]


def test_phase_labels():
    assert deployment_phase_for(0.001) == "canary"
    assert deployment_phase_for(0.01) == "limited"
    assert deployment_phase_for(0.1) == "gradual"
    assert deployment_phase_for(0.5) == "gradual"
    assert deployment_phase_for(1.0) == "full"


def test_result_evaluation():
    thresholds = {"effectiveness": 0.8, "stability": 0.95}
    triggers = {"crash_rate": {"op": "gt", "value": 0.01}, "effectiveness": {"op": "lt", "value": 0.5}}
    assert evaluate_results(None, thresholds, triggers) == (True, [])
    assert evaluate_results({"effectiveness": 0.85, "stability": 0.99}, thresholds, triggers) == (True, [])
    clean, reasons = evaluate_results({"crash_rate": 0.02, "effectiveness": 0.4}, thresholds, triggers)
    assert clean is False
    assert reasons == ["rollback_trigger:crash_rate", "rollback_trigger:effectiveness", "below_threshold:effectiveness"]


def test_canary_runs_through_every_phase_to_deployment(services, db_session):
    update_id, canary_id = _approved(services)
    started = services.rollout.canary_action(canary_id, "start", actor="release-bot")
    assert started["status"] == "running"
    assert started["strategy_update_status"] == "testing"
    assert started["deployment_phase"] == "canary"
    assert started["started_at"] is not None

    seen = []
    for _ in range(4):
        out = services.rollout.canary_action(canary_id, "advance", results=CLEAN_RESULTS)
        seen.append((out["current_phase"], out["user_percentage"], out["deployment_phase"]))
    assert seen == [(1, 0.01, "limited"), (2, 0.1, "gradual"), (3, 0.5, "gradual"), (4, 1.0, "full")]
    assert out["strategy_update_status"] == "testing"

    done = services.rollout.canary_action(canary_id, "advance")
    assert done["status"] == "completed"
    assert done["conclusion"] == "successful"
    assert done["strategy_update_status"] == "deployed"
    messages = db_session.scalars(
        select(DeploymentLog.log_message).where(DeploymentLog.strategy_update_id == update_id).order_by(DeploymentLog.id)
    ).all()
    assert messages[0] == "canary run created"
    assert messages[-1] == "canary completed; strategy deployed"
    assert len(messages) == 7
    detail = services.registry.get(update_id)
    assert detail["reviewed_by"] == "alice"
    assert [t["status"] for t in detail["ab_tests"]] == ["completed"]


def test_stop_with_clean_results_deploys(services):
    update_id, canary_id = _approved(services)
    services.rollout.canary_action(canary_id, "start")
    out = services.rollout.canary_action(canary_id, "stop", results=CLEAN_RESULTS)
    assert out["status"] == "completed"
    assert out["results"] == CLEAN_RESULTS
    assert out["user_percentage"] == 1.0
    assert services.registry.get(update_id)["status"] == "deployed"


def test_rollback_trigger_aborts_and_rolls_back(services):
    update_id, canary_id = _approved(services)
    services.rollout.canary_action(canary_id, "start")
    out = services.rollout.canary_action(canary_id, "stop", results=dict(CLEAN_RESULTS, crash_rate=0.05))
    assert out["status"] == "aborted"
    assert out["user_percentage"] == 0.0
    assert out["strategy_update_status"] == "rolled_back"
    notes = services.registry.get(update_id)["approval_notes"]
    assert "CANARY ABORTED" in notes and "crash_rate" in notes


def test_bad_results_on_advance_abort_the_run(services):
    update_id, canary_id = _approved(services)
    services.rollout.canary_action(canary_id, "start")
    out = services.rollout.canary_action(canary_id, "advance", results={"user_satisfaction": 0.3})
    assert out["status"] == "aborted"
    assert out["current_phase"] == 0
    assert out["strategy_update_status"] == "rolled_back"


def test_only_one_active_canary_per_update(services):
    update_id, _ = _approved(services)
    with pytest.raises(ConflictingCanaryError):
        services.rollout.create(update_id)


def test_start_twice_is_rejected(services):
    _, canary_id = _approved(services)
    services.rollout.canary_action(canary_id, "start")
    with pytest.raises(InvalidTransitionError) as exc:
        services.rollout.canary_action(canary_id, "start")
    assert exc.value.current_status == "running"


def test_abort_before_start_keeps_update_approved(services):
    update_id, canary_id = _approved(services)
    out = services.rollout.canary_action(canary_id, "abort", actor="alice")
    assert out["status"] == "aborted"
    assert out["strategy_update_status"] == "approved"
    replacement = services.rollout.create(update_id, deployment_phase="internal")
    assert replacement["status"] == "ready"
    assert replacement["deployment_phase"] == "internal"
    assert replacement["id"] != canary_id
    assert len(services.registry.get(update_id)["ab_tests"]) == 2


def test_canary_action_errors(services):
    pending = services.registry.propose(make_proposal())
    with pytest.raises(InvalidTransitionError):
        services.rollout.create(pending["id"])
    _, canary_id = _approved(services)
    with pytest.raises(InvalidTransitionError):
        services.rollout.canary_action(canary_id, "advance")
    with pytest.raises(ValidationFailedError):
        services.rollout.canary_action(canary_id, "pause")
    with pytest.raises(NotFoundError):
        services.rollout.canary_action(99999, "start")
    services.rollout.canary_action(canary_id, "abort")
    with pytest.raises(InvalidTransitionError):
        services.rollout.canary_action(canary_id, "abort")
