"""Compare-and-swap status transitions for strategy updates.

``transition`` is the only writer of ``StrategyUpdate.status``. The write is conditional on the
status the caller expects to replace; when no row matches, the current status is re-read to tell
a missing record from a stale one.
"""
from __future__ import annotations
from datetime import datetime
import logging
import json
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from optimizer_intelligence.errors import InvalidTransitionError, NotFoundError
from optimizer_intelligence.infrastructure.metrics import STRATEGY_TRANSITIONS, STRATEGY_TRANSITIONS_REJECTED
from optimizer_intelligence.models.tables import (
    StrategyUpdate,
    STATUS_PENDING,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_TESTING,
    STATUS_DEPLOYED,
    STATUS_ROLLED_BACK,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    STATUS_PENDING: (STATUS_APPROVED, STATUS_REJECTED),
    STATUS_APPROVED: (STATUS_TESTING,),
    STATUS_TESTING: (STATUS_DEPLOYED, STATUS_ROLLED_BACK),
    STATUS_DEPLOYED: (STATUS_ROLLED_BACK,),
    STATUS_REJECTED: (),
    STATUS_ROLLED_BACK: (),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def get_update(session: Session, update_id: int) -> StrategyUpdate:
    row = session.get(StrategyUpdate, update_id)
    if row is None:
        raise NotFoundError(f"strategy update {update_id} not found")
    return row


def transition(session: Session, update_id: int, expected: str | tuple[str, ...], target: str, **audit) -> str:
    """Move ``update_id`` from one of ``expected`` to ``target``; returns the status replaced."""
    session.flush()
    expected = (expected,) if isinstance(expected, str) else tuple(expected)
    sources = tuple(s for s in expected if can_transition(s, target))
    current = session.scalar(select(StrategyUpdate.status).where(StrategyUpdate.id == update_id))
    if current is None:
        raise NotFoundError(f"strategy update {update_id} not found")
    if current not in sources:
        _reject(update_id, current, target, "not_allowed")
    values = {"status": target, "updated_at": datetime.utcnow(), **audit}
    res = session.execute(
        update(StrategyUpdate)
        .where(StrategyUpdate.id == update_id, StrategyUpdate.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        now_status = session.scalar(select(StrategyUpdate.status).where(StrategyUpdate.id == update_id))
        if now_status is None:
            raise NotFoundError(f"strategy update {update_id} not found")
        _reject(update_id, now_status, target, "stale")
    session.expire_all()
    STRATEGY_TRANSITIONS.labels(from_status=current, to_status=target).inc()
    logger.info(json.dumps({"event": "strategy_transition", "id": update_id, "from": current, "to": target}))
    return current


def _reject(update_id: int, current: str, target: str, reason: str):
    STRATEGY_TRANSITIONS_REJECTED.labels(reason=reason).inc()
    logger.info(json.dumps({"event": "strategy_transition_rejected", "id": update_id, "current": current,
                            "target": target, "reason": reason}))
    if reason == "stale":
        msg = f"status changed concurrently to '{current}'; re-fetch and retry"
    else:
        msg = f"cannot move from '{current}' to '{target}'"
    raise InvalidTransitionError(msg, current_status=current)
