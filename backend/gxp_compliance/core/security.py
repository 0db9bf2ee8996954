"""
Caller identity for the HTTP surface.

Authentication and sessions are owned by the portal. The gateway in front of
this service forwards the authenticated user id and roles in headers whose
names are configured in settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from gxp_compliance.core.config import get_settings


@dataclass(frozen=True)
class Actor:
    """The authenticated identity behind a request."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return get_settings().admin_role in self.roles


def _parse_roles(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(role.strip() for role in raw.split(",") if role.strip())


async def get_current_actor(request: Request) -> Actor:
    """Resolve the forwarded identity or reject the request."""
    settings = get_settings()
    user_id = (request.headers.get(settings.identity_header) or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return Actor(user_id=user_id, roles=_parse_roles(request.headers.get(settings.roles_header)))


async def require_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Allow only actors holding the configured admin role."""
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return actor


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
