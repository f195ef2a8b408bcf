"""Agent session models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, model_validator

from agent_dispatch.models.enums import AgentRole, SessionMode, SessionStatus, TargetScope


class AgentSession(BaseModel):
    """Session description exposed over the API."""

    id: str
    project_id: str
    epic_id: Optional[str] = None
    story_id: Optional[str] = None
    role: str
    status: SessionStatus
    mode: SessionMode
    provider: str
    model: Optional[str] = None
    named_agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    prompt: str = ""
    branch_name: Optional[str] = None
    worktree_path: Optional[str] = None
    provider_session_id: Optional[str] = None
    last_non_empty_text: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ActiveSessionSummary(BaseModel):
    """Compact view of a session that holds a target."""

    id: str
    project_id: str
    epic_id: Optional[str] = None
    story_id: Optional[str] = None
    status: SessionStatus
    mode: SessionMode
    provider: str
    started_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionTarget(BaseModel):
    """Epic or story a session contends for."""

    scope: TargetScope
    project_id: str
    epic_id: Optional[str] = None
    story_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_ids(self) -> "SessionTarget":
        if self.scope == TargetScope.EPIC and not self.epic_id:
            raise ValueError("epic targets require epic_id")
        if self.scope == TargetScope.STORY and not self.story_id:
            raise ValueError("story targets require story_id")
        return self

    @classmethod
    def for_epic(cls, project_id: str, epic_id: str) -> "SessionTarget":
        return cls(scope=TargetScope.EPIC, project_id=project_id, epic_id=epic_id)

    @classmethod
    def for_story(
        cls, project_id: str, story_id: str, epic_id: Optional[str] = None
    ) -> "SessionTarget":
        return cls(
            scope=TargetScope.STORY, project_id=project_id, story_id=story_id, epic_id=epic_id
        )

    def as_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class LaunchRequest(BaseModel):
    """Request to run an agent against a target."""

    role: AgentRole = AgentRole.BUILD
    mode: SessionMode = SessionMode.CODE
    prompt: str
    named_agent_id: Optional[str] = None
    resume_session_id: Optional[str] = None
    repo_path: Optional[str] = None
    epic_title: Optional[str] = None
    cwd: Optional[str] = None


class StoryLaunchRequest(LaunchRequest):
    epic_id: Optional[str] = None


class TerminalResult(BaseModel):
    """Outcome written by a terminal transition."""

    status: SessionStatus
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_terminal(self) -> "TerminalResult":
        if not self.status.is_terminal:
            raise ValueError(f"{self.status.value} is not a terminal status")
        return self


class SessionOutput(BaseModel):
    """Normalized final output of a session."""

    session_id: str
    status: SessionStatus
    content: str
    last_non_empty_text: Optional[str] = None
    verdict: Optional[str] = None
