"""Role checking utilities for erpflow.

Actors carry plain role names and group ids (resolved by the host's
authentication layer). These helpers answer membership questions
against them without touching storage.
"""

from typing import Iterable, Optional

from erpflow.core.config import Settings, get_settings


class RoleChecker:
    """Checks role and group membership for an acting user."""

    def __init__(self, roles: Iterable[str], group_ids: Optional[Iterable[str]] = None):
        """
        Initialize with the actor's roles and groups.

        Args:
            roles: Role names granted to the actor
            group_ids: Approver groups the actor belongs to
        """
        self.roles = {r.strip() for r in roles if isinstance(r, str) and r.strip()}
        self.group_ids = {
            g.strip() for g in (group_ids or []) if isinstance(g, str) and g.strip()
        }

    def has_role(self, role: str) -> bool:
        """Check if the actor holds a role."""
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        """Check if the actor holds any of the given roles."""
        return any(self.has_role(r) for r in roles)

    def in_group(self, group_id: Optional[str]) -> bool:
        """Check if the actor belongs to an approver group."""
        return bool(group_id) and group_id in self.group_ids


def is_elevated(actor, settings: Optional[Settings] = None) -> bool:
    """
    Check if an actor holds an elevated (override-capable) role.

    Args:
        actor: Object with a ``roles`` list
        settings: Settings providing ``elevated_roles``

    Returns:
        True if any of the actor's roles is configured as elevated
    """
    settings = settings or get_settings()
    if actor is None:
        return False
    checker = RoleChecker(getattr(actor, "roles", None) or [])
    return checker.has_any_role(settings.elevated_roles_list)
