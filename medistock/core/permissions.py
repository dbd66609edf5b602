from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from medistock.core.exceptions import PermissionDenied


class OrgRole(str, Enum):
    """Organization role. Higher value = more authority."""
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


ROLE_LEVELS = {
    OrgRole.MEMBER.value: 1,
    OrgRole.ADMIN.value: 2,
    OrgRole.OWNER.value: 3,
}


def get_level_value(role: str) -> int:
    """Unknown roles rank below MEMBER."""
    return ROLE_LEVELS.get(str(role).upper(), 0)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as seen by the engine."""
    user_id: uuid.UUID
    organization_id: uuid.UUID
    role: str = OrgRole.MEMBER.value
    department_id: Optional[uuid.UUID] = None
    username: Optional[str] = None
    full_name: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        """Display snapshot stored next to history and audit rows."""
        return {
            "user_id": str(self.user_id),
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role,
            "department_id": str(self.department_id) if self.department_id else None,
        }


class PermissionChecker:
    """
    Role and department checks for transfer operations.

    Department relationship is either "requesting" or "supplying"; the actor
    must belong to that department of the transfer.
    """

    def __init__(self, actor: Actor):
        self.actor = actor

    def is_admin(self) -> bool:
        """ADMIN or OWNER."""
        return get_level_value(self.actor.role) >= ROLE_LEVELS[OrgRole.ADMIN.value]

    def in_department(self, department_id: uuid.UUID) -> bool:
        return self.actor.department_id is not None and self.actor.department_id == department_id

    def require_admin(self, operation: str) -> None:
        if not self.is_admin():
            raise PermissionDenied(
                f"Insufficient permissions for {operation}. ADMIN or OWNER required.",
                operation=operation,
                role=self.actor.role,
            )

    def require_department(self, department_id: uuid.UUID, relationship: str, operation: str) -> None:
        if not self.in_department(department_id):
            raise PermissionDenied(
                f"Only the {relationship} department can {operation}",
                operation=operation,
                relationship=relationship,
                department_id=department_id,
                actor_department_id=self.actor.department_id,
            )

    def require_department_or_admin(self, department_id: uuid.UUID, operation: str) -> None:
        if self.is_admin() or self.in_department(department_id):
            return
        raise PermissionDenied(
            f"Not a member of the department for {operation}",
            operation=operation,
            department_id=department_id,
        )
