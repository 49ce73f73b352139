"""
Caller identity carried into every state-changing operation.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from evisit.database.models import UserRole
from evisit.errors import ErrorKind, PermitError, validation_error


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: who acts, and in which role"""
    id: str
    role: UserRole
    name: Optional[str] = None

    def has_role(self, *roles: UserRole) -> bool:
        return self.role in roles


SYSTEM_ACTOR = Actor(id="system", role=UserRole.SYSTEM, name="Overstay sweep")


def require_actor(actor: Optional[Actor], allowed: Iterable[UserRole], action: str) -> Actor:
    """
    Reject a missing caller identity or a role not in allowed.

    Raises:
        PermitError: VALIDATION without an identity, PERMISSION_DENIED for a wrong role
    """
    if actor is None or not actor.id:
        raise validation_error(f"A caller identity is required to {action}", field="actor")

    allowed = tuple(allowed)
    if not actor.has_role(*allowed):
        raise PermitError(
            "PERMISSION_DENIED",
            f"Role {actor.role.value} may not {action}",
            ErrorKind.PERMISSION_DENIED,
            details={"allowed_roles": [role.value for role in allowed]}
        )
    return actor
