"""Authorization collaborator for privileged duplicate-detection actions.

The detection service only depends on the small Authorizer interface
(``is_authorized(actor_id, action) -> bool``).  The production
implementation, CasbinAuthorizer, is backed by a Casbin AsyncEnforcer whose
policies live in the database through casbin-async-sqlalchemy-adapter.

Policies are domain-aware: every check is
``enforce(actor_id, rbac_domain, "duplicates", action)``, and roles are
granted per domain, e.g.

    p, moderator, listings, duplicates, duplicates:scan
    g, alice, moderator, listings

Design decisions:
- The enforcer is built explicitly by the hosting process
  (``CasbinAuthorizer.create``) and injected; there is no module singleton.
- Any enforcer error is treated as a denial, never as a grant.
"""

from __future__ import annotations

import inspect
import logging
import pathlib
from abc import ABC, abstractmethod

import casbin
import casbin_async_sqlalchemy_adapter
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

ACTION_SCAN = "duplicates:scan"
ACTION_RESOLVE = "duplicates:resolve"
ACTION_STATS = "duplicates:stats"

RESOURCE = "duplicates"

# Absolute path to the Casbin model config located alongside this module.
_MODEL_PATH = pathlib.Path(__file__).parent / "rbac_model.conf"


class Authorizer(ABC):
    """External authorization check consumed by the detection service."""

    @abstractmethod
    async def is_authorized(self, actor_id: str | None, action: str) -> bool:
        ...


class CasbinAuthorizer(Authorizer):
    """Authorizer backed by a Casbin AsyncEnforcer.

    Args:
        enforcer: A loaded AsyncEnforcer using ``rbac_model.conf``.
        domain:   Policy domain every check is scoped to.
    """

    def __init__(self, enforcer: casbin.AsyncEnforcer, domain: str = "listings") -> None:
        self._enforcer = enforcer
        self._domain = domain

    @classmethod
    async def create(cls, engine: AsyncEngine | str, domain: str = "listings") -> "CasbinAuthorizer":
        """Build the adapter and enforcer and load all policies.

        The adapter creates the ``casbin_rule`` table if it does not exist.
        """
        adapter = casbin_async_sqlalchemy_adapter.Adapter(engine)
        await adapter.create_table()
        enforcer = casbin.AsyncEnforcer(str(_MODEL_PATH), adapter)
        await enforcer.load_policy()
        return cls(enforcer, domain)

    async def is_authorized(self, actor_id: str | None, action: str) -> bool:
        if not actor_id:
            return False
        try:
            allowed = self._enforcer.enforce(actor_id, self._domain, RESOURCE, action)
            if inspect.isawaitable(allowed):
                allowed = await allowed
        except Exception as exc:
            logger.warning("Authorization check failed for %s/%s: %s", actor_id, action, exc)
            return False
        return bool(allowed)

    async def grant(self, actor_id: str, action: str) -> bool:
        """Allow *actor_id* to perform *action*.  Returns False if already granted."""
        return await self._enforcer.add_policy(actor_id, self._domain, RESOURCE, action)

    async def revoke(self, actor_id: str, action: str) -> bool:
        return await self._enforcer.remove_policy(actor_id, self._domain, RESOURCE, action)

    async def assign_role(self, actor_id: str, role: str) -> bool:
        """Give *actor_id* every permission held by *role* within the domain."""
        return await self._enforcer.add_role_for_user_in_domain(actor_id, role, self._domain)
