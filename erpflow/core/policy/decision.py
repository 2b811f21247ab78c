"""Decision values returned by action policy evaluation.

Decisions and guard failures are ephemeral: they exist for the duration
of one evaluation call and are handed back to the caller, which renders
messages and writes audit entries from them.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


class DenialReason(str, Enum):
    """Why a policy evaluation denied an action."""

    NO_MATCHING_POLICY = "no_matching_policy"  # Nothing configured for the input
    GUARD_FAILED = "guard_failed"              # Matched, but every match was blocked
    REASON_REQUIRED = "reason_required"        # Matched, justification missing


class GuardFailureReason(str, Enum):
    """Reasons a single guard can fail with."""

    # Schema problems in the guard list
    INVALID_SCHEMA = "invalid_schema"
    INVALID_ITEM = "invalid_item"
    TYPE_REQUIRED = "type_required"
    UNKNOWN_GUARD_TYPE = "unknown_guard_type"

    # Missing inputs
    TARGET_REQUIRED = "target_required"
    PROJECT_REQUIRED = "project_required"
    PERIOD_REQUIRED = "period_required"
    WORK_DATE_REQUIRED = "workDate_required"

    # Live state checks
    APPROVAL_IN_PROGRESS = "approval_in_progress"
    PROJECT_IS_CLOSED = "project_is_closed"
    PERIOD_LOCKED = "period_locked"
    EDIT_WINDOW_EXPIRED = "edit_window_expired"

    # Acknowledgement checks
    UNSUPPORTED_TARGET = "unsupported_target"
    MISSING_LINK = "missing_link"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"


@dataclass
class GuardFailure:
    """A single failing guard with a diagnostic payload."""
    type: str
    reason: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "reason": self.reason}
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass
class Decision:
    """
    Result of evaluating an action against the configured policies.

    ``reason`` is None exactly when ``allowed`` is True.
    """
    allowed: bool
    reason: Optional[DenialReason] = None
    matched_policy_id: Optional[str] = None
    require_reason: bool = False
    guard_failures: List[GuardFailure] = field(default_factory=list)
    guard_override: bool = False

    @classmethod
    def allow(cls, policy_id: Optional[str], require_reason: bool = False) -> "Decision":
        return cls(allowed=True, matched_policy_id=policy_id, require_reason=require_reason)

    @classmethod
    def deny(
        cls,
        reason: DenialReason,
        *,
        policy_id: Optional[str] = None,
        require_reason: bool = False,
        guard_failures: Optional[List[GuardFailure]] = None,
    ) -> "Decision":
        return cls(
            allowed=False,
            reason=reason,
            matched_policy_id=policy_id,
            require_reason=require_reason,
            guard_failures=list(guard_failures or []),
        )

    @property
    def failure_types(self) -> List[str]:
        """Guard types that failed, in declaration order."""
        return [f.type for f in self.guard_failures]

    def to_dict(self) -> Dict[str, Any]:
        """Convert decision to dictionary for responses and audit metadata."""
        data: Dict[str, Any] = {
            "allowed": self.allowed,
            "matched_policy_id": self.matched_policy_id,
            "require_reason": self.require_reason,
        }
        if self.reason is not None:
            data["reason"] = self.reason.value
        if self.guard_failures:
            data["guard_failures"] = [f.to_dict() for f in self.guard_failures]
        if self.guard_override:
            data["guard_override"] = True
        return data


@dataclass
class FallbackDecision(Decision):
    """Decision adapted for callers without explicit policy configuration."""
    policy_applied: bool = True

    @classmethod
    def from_decision(cls, decision: Decision, **overrides: Any) -> "FallbackDecision":
        values = {
            "allowed": decision.allowed,
            "reason": decision.reason,
            "matched_policy_id": decision.matched_policy_id,
            "require_reason": decision.require_reason,
            "guard_failures": list(decision.guard_failures),
            "guard_override": decision.guard_override,
        }
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["policy_applied"] = self.policy_applied
        return data
