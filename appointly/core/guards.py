"""
Authorization guards.

A guard is a plain function ``(actor, resource) -> None`` that raises
``ForbiddenError`` when the actor may not act on the resource. Guards are
combined with ``compose_guards`` and run in the order given, so the same
chain can be used from an HTTP route, a background job or a test.

Usage::

    guard = compose_guards(
        require_role(ActorType.PROVIDER, ActorType.ADMIN),
        require_owner(provider=lambda b: b.provider.user_id),
    )
    guard(actor, booking)
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from appointly.core.exceptions import ForbiddenError


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation."""

    user_id: Optional[uuid.UUID]
    actor_type: ActorType

    @property
    def is_privileged(self) -> bool:
        return self.actor_type in (ActorType.ADMIN, ActorType.SYSTEM)

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, actor_type=ActorType.SYSTEM)


Guard = Callable[[Actor, Any], None]
OwnerResolver = Callable[[Any], Optional[uuid.UUID]]


# ---------------------------------------------------------------------------
# Guard factories
# ---------------------------------------------------------------------------

def require_role(*roles: ActorType) -> Guard:
    """Actor must have one of ``roles``."""
    allowed = frozenset(roles)

    def guard(actor: Actor, resource: Any) -> None:
        if actor.actor_type not in allowed:
            raise ForbiddenError(
                f"Role '{actor.actor_type.value}' is not allowed to perform this action.",
                details={"allowed_roles": sorted(r.value for r in allowed)},
            )

    return guard


def require_owner(**owners: OwnerResolver) -> Guard:
    """Actor must own the resource through the relation named after its role.

    Keyword names are actor type values (``customer``, ``provider``); each
    resolver returns the user id that owns the resource for that role.
    Admins and the system actor always pass.
    """

    def guard(actor: Actor, resource: Any) -> None:
        if actor.is_privileged:
            return
        resolver = owners.get(actor.actor_type.value)
        if resolver is None or actor.user_id is None or resolver(resource) != actor.user_id:
            raise ForbiddenError("You do not have access to this resource.")

    return guard


def compose_guards(*guards: Guard) -> Guard:
    """Run ``guards`` in order; the first failure wins."""

    def guard(actor: Actor, resource: Any) -> None:
        for check in guards:
            check(actor, resource)

    return guard
