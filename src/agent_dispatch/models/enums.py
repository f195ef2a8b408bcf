"""Shared enums for Agent Dispatch models."""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({SessionStatus.QUEUED, SessionStatus.RUNNING})


class SessionMode(str, Enum):
    PLAN = "plan"
    CODE = "code"


class StreamType(str, Enum):
    RAW = "raw"
    OUTPUT = "output"
    RESPONSE = "response"


class ProviderType(str, Enum):
    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI_CLI = "gemini-cli"


class TargetScope(str, Enum):
    EPIC = "epic"
    STORY = "story"


class AgentRole(str, Enum):
    BUILD = "build"
    TICKET_BUILD = "ticket_build"
    TEAM_BUILD = "team_build"
    REVIEW_SECURITY = "review_security"
    REVIEW_CODE = "review_code"
    REVIEW_COMPLIANCE = "review_compliance"
    REVIEW_FEATURE = "review_feature"
    CHAT = "chat"
    SPEC_GENERATION = "spec_generation"

    @property
    def is_review(self) -> bool:
        return self.value.startswith("review_")


class ProviderSource(str, Enum):
    EXPLICIT = "explicit"
    PROJECT = "project"
    GLOBAL = "global"
    SEEDED = "seeded"
    FALLBACK = "fallback"
