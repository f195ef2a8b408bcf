"""Error taxonomy for the orchestration services."""

from __future__ import annotations

from typing import Any, Dict, Optional

from agent_dispatch.models.session import ActiveSessionSummary, SessionTarget

SESSION_LIFECYCLE_CONFLICT_CODE = "INVALID_SESSION_TRANSITION"
SESSION_NOT_FOUND_CODE = "SESSION_NOT_FOUND"
AGENT_ALREADY_RUNNING_CODE = "AGENT_ALREADY_RUNNING"


class SessionNotFoundError(RuntimeError):
    """Raised when a session id does not exist."""

    code = SESSION_NOT_FOUND_CODE

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(RuntimeError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    code = SESSION_LIFECYCLE_CONFLICT_CODE

    def __init__(self, session_id: str, from_status: Optional[str], to_status: str) -> None:
        super().__init__(
            f"Invalid session transition from {from_status or 'unknown'} to {to_status}"
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status

    @property
    def details(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
        }

    def to_payload(self) -> Dict[str, Any]:
        return {"error": str(self), "code": self.code, "details": self.details}


class TargetBusyError(RuntimeError):
    """Raised when another session already holds the requested target."""

    code = AGENT_ALREADY_RUNNING_CODE

    def __init__(
        self,
        target: SessionTarget,
        conflict: ActiveSessionSummary,
        message: str = "Another agent is already running for this task.",
    ) -> None:
        super().__init__(message)
        self.target = target
        self.conflict = conflict

    @property
    def session_url(self) -> str:
        return f"/projects/{self.target.project_id}/sessions/{self.conflict.id}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": str(self),
            "code": self.code,
            "data": {
                "active_session_id": self.conflict.id,
                "active_session": self.conflict.model_dump(mode="json"),
                "session_url": self.session_url,
                "target": self.target.as_payload(),
            },
        }


class NamedAgentError(RuntimeError):
    """Raised when a named agent cannot be created, updated or found."""

    def __init__(self, message: str, not_found: bool = False) -> None:
        super().__init__(message)
        self.not_found = not_found
