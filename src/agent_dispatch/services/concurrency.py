"""Per-target mutual exclusion for agent sessions."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from agent_dispatch.clients.database import AgentSession as SessionORM, session_scope
from agent_dispatch.models.enums import ACTIVE_STATUSES, TargetScope
from agent_dispatch.models.session import ActiveSessionSummary, AgentSession, SessionTarget
from agent_dispatch.services.errors import TargetBusyError
from agent_dispatch.services.lifecycle import create_queued_session

LOG = logging.getLogger(__name__)


def _target_clause(target: SessionTarget):
    if target.scope == TargetScope.EPIC:
        return SessionORM.epic_id == target.epic_id

    clauses = [SessionORM.story_id == target.story_id]
    if target.epic_id:
        clauses.append(SessionORM.epic_id == target.epic_id)
    return or_(*clauses)


def _find_conflict(db: Session, target: SessionTarget) -> Optional[SessionORM]:
    return (
        db.query(SessionORM)
        .filter(
            SessionORM.project_id == target.project_id,
            SessionORM.status.in_(list(ACTIVE_STATUSES)),
            _target_clause(target),
        )
        .order_by(SessionORM.created_at.desc())
        .first()
    )


def find_active_session_for_target(target: SessionTarget) -> Optional[ActiveSessionSummary]:
    """Newest queued or running session contending for ``target``, if any."""
    with session_scope() as db:
        conflict = _find_conflict(db, target)
        if conflict is None:
            return None
        return ActiveSessionSummary.model_validate(conflict, from_attributes=True)


def insert_session_with_guard(target: SessionTarget, **fields: Any) -> AgentSession:
    """Create a queued session for ``target`` unless another one holds it.

    The lookup and the insert share one ``BEGIN IMMEDIATE`` transaction, so two
    callers racing for the same target are serialized and the loser sees the
    winner's row.
    """
    with session_scope() as db:
        conflict = _find_conflict(db, target)
        if conflict is not None:
            summary = ActiveSessionSummary.model_validate(conflict, from_attributes=True)
            LOG.info(
                "Target %s busy: session %s is %s",
                target.as_payload(),
                summary.id,
                summary.status.value,
            )
            raise TargetBusyError(target, summary)

        session = create_queued_session(
            db,
            project_id=target.project_id,
            epic_id=target.epic_id,
            story_id=target.story_id,
            **fields,
        )
        return AgentSession.model_validate(session, from_attributes=True)
