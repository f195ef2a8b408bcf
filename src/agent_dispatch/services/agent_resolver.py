"""Resolve which provider and model should run a role."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agent_dispatch import constants
from agent_dispatch.clients.database import (
    AgentRoleDefault as RoleDefaultORM,
    NamedAgentConfig as NamedAgentORM,
    session_scope,
)
from agent_dispatch.models.agent_config import ResolvedAgent
from agent_dispatch.models.enums import AgentRole, ProviderSource
from agent_dispatch.services.agent_config_service import normalize_provider

LOG = logging.getLogger(__name__)


def fallback_agent() -> ResolvedAgent:
    return ResolvedAgent(provider=constants.FALLBACK_PROVIDER, source=ProviderSource.FALLBACK)


def _from_named(agent: NamedAgentORM, source: ProviderSource) -> ResolvedAgent:
    return ResolvedAgent(
        provider=normalize_provider(agent.provider),
        model=agent.model,
        named_agent_id=agent.id,
        name=agent.name,
        source=source,
    )


class AgentResolver:
    """Walks explicit agent, project default, global default, seeded agent, fallback.

    The first step that matches wins. A role default whose named agent has been
    deleted stops the walk at its own scope and yields the bare provider.
    """

    def resolve(
        self,
        role: AgentRole,
        project_id: Optional[str] = None,
        named_agent_id: Optional[str] = None,
    ) -> ResolvedAgent:
        role_value = AgentRole(role).value
        with session_scope() as db:
            if named_agent_id:
                agent = db.get(NamedAgentORM, named_agent_id)
                if agent:
                    return _from_named(agent, ProviderSource.EXPLICIT)
                LOG.debug("Explicit named agent %s not found; continuing", named_agent_id)

            if project_id:
                resolved = self._from_default(db, role_value, project_id, ProviderSource.PROJECT)
                if resolved:
                    return resolved

            resolved = self._from_default(db, role_value, constants.GLOBAL_SCOPE, ProviderSource.GLOBAL)
            if resolved:
                return resolved

            seeded = (
                db.query(NamedAgentORM)
                .filter(func.lower(NamedAgentORM.name) == constants.SEEDED_AGENT_NAME.lower())
                .one_or_none()
            )
            if seeded:
                return _from_named(seeded, ProviderSource.SEEDED)

        LOG.warning("No agent configured for role %s; using %s", role_value, constants.FALLBACK_PROVIDER)
        return fallback_agent()

    @staticmethod
    def _from_default(
        db: Session, role: str, scope: str, source: ProviderSource
    ) -> Optional[ResolvedAgent]:
        default = (
            db.query(RoleDefaultORM)
            .filter(RoleDefaultORM.role == role, RoleDefaultORM.scope == scope)
            .one_or_none()
        )
        if not default:
            return None

        if default.named_agent_id:
            agent = db.get(NamedAgentORM, default.named_agent_id)
            if agent:
                return _from_named(agent, source)
            LOG.info(
                "Role default %s/%s references deleted agent %s; using provider %s",
                role,
                scope,
                default.named_agent_id,
                default.provider,
            )
        return ResolvedAgent(provider=normalize_provider(default.provider), source=source)
