"""Agent configuration models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from agent_dispatch.models.enums import AgentRole, ProviderSource


class NamedAgent(BaseModel):
    """Saved, user-named provider/model pair."""

    id: str
    name: str
    provider: str
    model: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NamedAgentCreateRequest(BaseModel):
    name: str
    provider: str
    model: str


class NamedAgentUpdateRequest(BaseModel):
    name: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class RoleDefault(BaseModel):
    """Provider default for an agent role at a scope."""

    id: str
    role: str
    scope: str
    provider: str
    named_agent_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoleDefaultRequest(BaseModel):
    provider: str
    named_agent_id: Optional[str] = None


class RoleProvider(BaseModel):
    """Effective provider for a role and where it came from."""

    role: AgentRole
    provider: str
    source: ProviderSource
    scope: str


class ResolvedAgent(BaseModel):
    """Outcome of agent resolution for a role."""

    provider: str
    model: Optional[str] = None
    named_agent_id: Optional[str] = None
    name: Optional[str] = None
    source: ProviderSource = ProviderSource.FALLBACK
