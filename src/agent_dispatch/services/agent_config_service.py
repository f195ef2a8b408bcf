"""Named agents and per-role provider defaults."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func

from agent_dispatch import constants
from agent_dispatch.clients.database import (
    AgentRoleDefault as RoleDefaultORM,
    NamedAgentConfig as NamedAgentORM,
    seed_default_named_agent,
    session_scope,
)
from agent_dispatch.models.agent_config import NamedAgent, RoleDefault, RoleProvider
from agent_dispatch.models.enums import AgentRole, ProviderSource, ProviderType
from agent_dispatch.services.errors import NamedAgentError

LOG = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = frozenset(provider.value for provider in ProviderType)


def normalize_provider(value: Optional[str]) -> str:
    """Map a stored provider string onto a supported provider key."""
    if value and value in SUPPORTED_PROVIDERS:
        return value
    return constants.FALLBACK_PROVIDER


def _require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise NamedAgentError(f"{field} is required")
    return text


def _require_provider(value: Optional[str]) -> str:
    provider = (value or "").strip()
    if provider not in SUPPORTED_PROVIDERS:
        choices = ", ".join(sorted(SUPPORTED_PROVIDERS))
        raise NamedAgentError(f"Unsupported provider '{value}'. Expected one of: {choices}")
    return provider


class AgentConfigService:
    """CRUD for named agents and role defaults."""

    def list_named_agents(self) -> List[NamedAgent]:
        with session_scope() as db:
            agents = db.query(NamedAgentORM).order_by(NamedAgentORM.name.asc()).all()
            return [NamedAgent.model_validate(agent, from_attributes=True) for agent in agents]

    def get_named_agent(self, agent_id: str) -> Optional[NamedAgent]:
        with session_scope() as db:
            agent = db.get(NamedAgentORM, agent_id)
            if not agent:
                return None
            return NamedAgent.model_validate(agent, from_attributes=True)

    def create_named_agent(self, name: str, provider: str, model: str) -> NamedAgent:
        name = _require_text(name, "name")
        model = _require_text(model, "model")
        provider = _require_provider(provider)

        with session_scope() as db:
            self._ensure_unique_name(db, name)
            agent = NamedAgentORM(name=name, provider=provider, model=model)
            db.add(agent)
            db.flush()
            db.refresh(agent)
            LOG.info("Created named agent %s (%s/%s)", agent.name, provider, model)
            return NamedAgent.model_validate(agent, from_attributes=True)

    def update_named_agent(
        self,
        agent_id: str,
        name: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> NamedAgent:
        with session_scope() as db:
            agent = db.get(NamedAgentORM, agent_id)
            if not agent:
                raise NamedAgentError(f"Named agent not found: {agent_id}", not_found=True)

            if name is not None:
                name = _require_text(name, "name")
                self._ensure_unique_name(db, name, exclude_id=agent_id)
                agent.name = name
            if provider is not None:
                agent.provider = _require_provider(provider)
            if model is not None:
                agent.model = _require_text(model, "model")

            db.flush()
            return NamedAgent.model_validate(agent, from_attributes=True)

    def delete_named_agent(self, agent_id: str) -> bool:
        """Delete a named agent. Role defaults that reference it are left untouched."""
        with session_scope() as db:
            agent = db.get(NamedAgentORM, agent_id)
            if not agent:
                return False
            db.delete(agent)
            LOG.info("Deleted named agent %s", agent_id)
            return True

    def find_named_agent_by_name(self, name: str) -> Optional[NamedAgent]:
        with session_scope() as db:
            agent = (
                db.query(NamedAgentORM)
                .filter(func.lower(NamedAgentORM.name) == name.strip().lower())
                .one_or_none()
            )
            if not agent:
                return None
            return NamedAgent.model_validate(agent, from_attributes=True)

    def seed_default_named_agent(self) -> NamedAgent:
        with session_scope() as db:
            agent = seed_default_named_agent(db)
            return NamedAgent.model_validate(agent, from_attributes=True)

    def set_role_default(
        self,
        role: AgentRole,
        provider: str,
        scope: str = constants.GLOBAL_SCOPE,
        named_agent_id: Optional[str] = None,
    ) -> RoleDefault:
        """Create or replace the default for ``role`` at ``scope``."""
        provider = _require_provider(provider)
        role_value = AgentRole(role).value

        with session_scope() as db:
            if named_agent_id and not db.get(NamedAgentORM, named_agent_id):
                raise NamedAgentError(f"Named agent not found: {named_agent_id}", not_found=True)

            default = (
                db.query(RoleDefaultORM)
                .filter(RoleDefaultORM.role == role_value, RoleDefaultORM.scope == scope)
                .one_or_none()
            )
            if default is None:
                default = RoleDefaultORM(role=role_value, scope=scope, provider=provider)
                db.add(default)
            default.provider = provider
            default.named_agent_id = named_agent_id or None
            db.flush()
            db.refresh(default)
            return RoleDefault.model_validate(default, from_attributes=True)

    def get_role_default(
        self, role: AgentRole, scope: str = constants.GLOBAL_SCOPE
    ) -> Optional[RoleDefault]:
        with session_scope() as db:
            default = (
                db.query(RoleDefaultORM)
                .filter(RoleDefaultORM.role == AgentRole(role).value, RoleDefaultORM.scope == scope)
                .one_or_none()
            )
            if not default:
                return None
            return RoleDefault.model_validate(default, from_attributes=True)

    def delete_role_default(self, role: AgentRole, scope: str = constants.GLOBAL_SCOPE) -> bool:
        with session_scope() as db:
            deleted = (
                db.query(RoleDefaultORM)
                .filter(RoleDefaultORM.role == AgentRole(role).value, RoleDefaultORM.scope == scope)
                .delete()
            )
            return bool(deleted)

    def list_role_providers(self, project_id: Optional[str] = None) -> List[RoleProvider]:
        """Effective provider for every role, project defaults overriding global ones."""
        scopes = [constants.GLOBAL_SCOPE]
        if project_id:
            scopes.append(project_id)

        with session_scope() as db:
            rows = db.query(RoleDefaultORM).filter(RoleDefaultORM.scope.in_(scopes)).all()
            by_key = {(row.role, row.scope): row.provider for row in rows}

        providers: List[RoleProvider] = []
        for role in AgentRole:
            if project_id and (role.value, project_id) in by_key:
                provider, source, scope = by_key[(role.value, project_id)], ProviderSource.PROJECT, project_id
            elif (role.value, constants.GLOBAL_SCOPE) in by_key:
                provider = by_key[(role.value, constants.GLOBAL_SCOPE)]
                source, scope = ProviderSource.GLOBAL, constants.GLOBAL_SCOPE
            else:
                provider, source, scope = constants.FALLBACK_PROVIDER, ProviderSource.FALLBACK, constants.GLOBAL_SCOPE
            providers.append(
                RoleProvider(role=role, provider=normalize_provider(provider), source=source, scope=scope)
            )
        return providers

    @staticmethod
    def _ensure_unique_name(db, name: str, exclude_id: Optional[str] = None) -> None:
        query = db.query(NamedAgentORM).filter(func.lower(NamedAgentORM.name) == name.lower())
        if exclude_id:
            query = query.filter(NamedAgentORM.id != exclude_id)
        if query.first() is not None:
            raise NamedAgentError(f"A named agent called '{name}' already exists")
