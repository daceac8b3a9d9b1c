"""
Role-based access rules for call records.
"""

from enum import Enum

from calldesk.auth.middleware import CurrentUser
from calldesk.shared.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """User roles with hierarchical ordering."""

    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    AGENT = "agent"

    @classmethod
    def from_string(cls, role_str: str) -> "Role":
        """Convert string to Role enum.

        Raises:
            ValueError: If role string is invalid.
        """
        try:
            return cls(role_str.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid role: {role_str}")

    def has_permission(self, required_role: "Role") -> bool:
        """Check if this role has permission for the required role.

        Role hierarchy: admin > supervisor > agent
        """
        hierarchy = {
            Role.ADMIN: 3,
            Role.SUPERVISOR: 2,
            Role.AGENT: 1,
        }
        return hierarchy.get(self, 0) >= hierarchy.get(required_role, 0)


def is_admin(user: CurrentUser) -> bool:
    """True when the user may bypass call ownership checks."""
    try:
        role = Role.from_string(user.role)
    except ValueError:
        logger.warning("Unknown role in token", extra={"user_id": user.id, "role": user.role})
        return False
    return role.has_permission(Role.ADMIN)
