"""Role checks used by the approval workflow."""

from .checker import RoleChecker, is_elevated


__all__ = [
    "RoleChecker",
    "is_elevated",
]
