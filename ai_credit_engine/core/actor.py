"""
Acting principal for engine calls.

Callers resolve the role once (from their session or auth layer) and pass it
explicitly; the engine never looks up "the current organization" on its own.
"""

from dataclasses import dataclass
from enum import Enum


class ActorRole(Enum):
    """Role of the acting user, in routing precedence order."""
    SUPER_ADMIN = "super_admin"  # Platform operator, may overdraw the org pool
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


ORG_ADMIN_ROLES = (ActorRole.OWNER, ActorRole.ADMIN)


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, and on behalf of which organization."""
    org_id: str
    user_id: str
    role: ActorRole = ActorRole.MEMBER

    def __post_init__(self):
        if not self.org_id:
            raise ValueError("org_id is required")
        if not self.user_id:
            raise ValueError("user_id is required")
        if not isinstance(self.role, ActorRole):
            object.__setattr__(self, "role", ActorRole(self.role))

    @property
    def is_super_admin(self) -> bool:
        return self.role == ActorRole.SUPER_ADMIN

    @property
    def uses_org_pool(self) -> bool:
        """Owners, admins and super-admins spend from the org pool directly."""
        return self.is_super_admin or self.role in ORG_ADMIN_ROLES

    @property
    def can_manage_team(self) -> bool:
        return self.uses_org_pool
