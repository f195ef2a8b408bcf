"""Session state machine.

``queued -> running -> {completed | failed | cancelled}``, plus the direct
``queued -> {failed | cancelled}`` short circuit. Terminal statuses absorb:
every transition re-reads the current status inside its own transaction and
raises ``InvalidTransitionError`` without writing anything when the move is
not allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from agent_dispatch.clients.database import AgentSession as SessionORM, session_scope
from agent_dispatch.models.enums import SessionMode, SessionStatus
from agent_dispatch.models.session import AgentSession, TerminalResult
from agent_dispatch.providers.base import ProviderResult
from agent_dispatch.services.errors import InvalidTransitionError, SessionNotFoundError
from agent_dispatch.utils.ids import utcnow

LOG = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SessionStatus.QUEUED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
    ),
}

DEFAULT_FAILURE_MESSAGE = "Agent process failed"
CANCELLED_BY_USER = "Cancelled by user"


def can_transition(current: Optional[SessionStatus], target: SessionStatus) -> bool:
    return current is not None and target in ALLOWED_TRANSITIONS.get(current, frozenset())


def build_transition_patch(
    session_id: str,
    current: Optional[SessionStatus],
    target: SessionStatus,
    at: datetime,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Return the column updates for moving ``current`` to ``target``."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            session_id, current.value if current else None, SessionStatus(target).value
        )

    if target == SessionStatus.RUNNING:
        return {"status": target, "started_at": at}

    patch: Dict[str, Any] = {"status": target, "ended_at": at, "completed_at": at}
    if target == SessionStatus.COMPLETED:
        patch["error"] = None
    elif target == SessionStatus.FAILED:
        patch["error"] = error or DEFAULT_FAILURE_MESSAGE
    else:
        patch["error"] = error
    return patch


def as_terminal_result(result: Union[TerminalResult, ProviderResult]) -> TerminalResult:
    if isinstance(result, TerminalResult):
        return result
    if result.success:
        return TerminalResult(status=SessionStatus.COMPLETED)
    return TerminalResult(status=SessionStatus.FAILED, error=result.error)


def create_queued_session(
    db: Session,
    project_id: str,
    role: str,
    provider: str,
    prompt: str = "",
    mode: SessionMode = SessionMode.CODE,
    epic_id: Optional[str] = None,
    story_id: Optional[str] = None,
    model: Optional[str] = None,
    named_agent_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    branch_name: Optional[str] = None,
    worktree_path: Optional[str] = None,
) -> SessionORM:
    """Insert a ``queued`` session inside the caller's transaction."""
    session = SessionORM(
        project_id=project_id,
        epic_id=epic_id,
        story_id=story_id,
        role=role,
        status=SessionStatus.QUEUED,
        mode=mode,
        provider=provider,
        model=model,
        named_agent_id=named_agent_id,
        agent_name=agent_name,
        prompt=prompt,
        branch_name=branch_name,
        worktree_path=worktree_path,
        created_at=utcnow(),
    )
    db.add(session)
    db.flush()
    return session


def _apply(
    session_id: str,
    target: SessionStatus,
    at: Optional[datetime] = None,
    error: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> AgentSession:
    with session_scope() as db:
        session = db.get(SessionORM, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        previous = session.status
        patch = build_transition_patch(session_id, previous, target, at or utcnow(), error)
        patch.update({key: value for key, value in (extra or {}).items() if value is not None})
        for field, value in patch.items():
            setattr(session, field, value)
        db.flush()

        LOG.info("Session %s: %s -> %s", session_id, previous.value, target.value)
        return AgentSession.model_validate(session, from_attributes=True)


def mark_running(session_id: str, at: Optional[datetime] = None) -> AgentSession:
    return _apply(session_id, SessionStatus.RUNNING, at=at)


def mark_terminal(
    session_id: str,
    result: Union[TerminalResult, ProviderResult],
    at: Optional[datetime] = None,
    provider_session_id: Optional[str] = None,
) -> AgentSession:
    terminal = as_terminal_result(result)
    return _apply(
        session_id,
        terminal.status,
        at=at,
        error=terminal.error,
        extra={"provider_session_id": provider_session_id},
    )


def mark_cancelled(
    session_id: str, error: Optional[str] = CANCELLED_BY_USER, at: Optional[datetime] = None
) -> AgentSession:
    return _apply(session_id, SessionStatus.CANCELLED, at=at, error=error)
