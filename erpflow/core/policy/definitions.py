"""Action policy definitions and the inputs they are matched against.

An action policy authorizes one ``(flow_type, action_key)`` pair for a set
of subjects, optionally restricted to document statuses, and lists the
guards that must pass before the action is allowed.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


def normalize_string(value: Any) -> str:
    """Return a trimmed string, or '' for anything that is not a string."""
    return value.strip() if isinstance(value, str) else ""


def normalize_string_list(value: Any) -> List[str]:
    """Return trimmed, non-empty strings from a list; [] for non-lists."""
    if not isinstance(value, (list, tuple)):
        return []
    return [s for s in (normalize_string(item) for item in value) if s]


@dataclass
class Actor:
    """The user attempting an action."""
    user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    group_ids: List[str] = field(default_factory=list)


@dataclass
class SubjectFilter:
    """
    Who a policy applies to.

    Clauses are OR-matched; a filter with no clauses matches everyone.
    """
    roles: List[str] = field(default_factory=list)
    group_ids: List[str] = field(default_factory=list)
    user_ids: List[str] = field(default_factory=list)

    @property
    def is_wildcard(self) -> bool:
        return not (self.roles or self.group_ids or self.user_ids)

    def matches(self, actor: Actor) -> bool:
        if self.is_wildcard:
            return True
        if any(role in actor.roles for role in self.roles):
            return True
        if any(group_id in actor.group_ids for group_id in self.group_ids):
            return True
        if actor.user_id and actor.user_id in self.user_ids:
            return True
        return False

    @classmethod
    def from_dict(cls, data: Any) -> "SubjectFilter":
        if not isinstance(data, dict):
            return cls()
        return cls(
            roles=normalize_string_list(data.get("roles")),
            group_ids=normalize_string_list(data.get("groupIds")),
            user_ids=normalize_string_list(data.get("userIds")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"roles": self.roles, "groupIds": self.group_ids, "userIds": self.user_ids}


@dataclass
class StateConstraints:
    """Document statuses a policy is restricted to."""
    status_in: List[str] = field(default_factory=list)
    status_not_in: List[str] = field(default_factory=list)

    def matches(self, state: Any) -> bool:
        # No state to compare against means the constraint cannot exclude.
        if not isinstance(state, dict):
            return True
        status = normalize_string(state.get("status"))
        if self.status_in and status not in self.status_in:
            return False
        if self.status_not_in and status in self.status_not_in:
            return False
        return True

    @classmethod
    def from_dict(cls, data: Any) -> "StateConstraints":
        if not isinstance(data, dict):
            return cls()
        return cls(
            status_in=normalize_string_list(data.get("statusIn")),
            status_not_in=normalize_string_list(data.get("statusNotIn")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"statusIn": self.status_in, "statusNotIn": self.status_not_in}


@dataclass
class ActionPolicy:
    """
    A configured authorization policy.

    ``guards`` is kept as authored; malformed guard lists are reported as
    guard failures at evaluation time instead of being rejected here.
    """
    id: str
    flow_type: str
    action_key: str
    priority: int = 0
    is_enabled: bool = True
    subjects: SubjectFilter = field(default_factory=SubjectFilter)
    state_constraints: StateConstraints = field(default_factory=StateConstraints)
    guards: Any = None
    require_reason: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionPolicy":
        """Create a policy from its stored (camelCase) representation."""
        return cls(
            id=str(data["id"]),
            flow_type=normalize_string(data.get("flowType")),
            action_key=normalize_string(data.get("actionKey")),
            priority=int(data.get("priority") or 0),
            is_enabled=bool(data.get("isEnabled", True)),
            subjects=SubjectFilter.from_dict(data.get("subjects")),
            state_constraints=StateConstraints.from_dict(data.get("stateConstraints")),
            guards=data.get("guards"),
            require_reason=bool(data.get("requireReason", False)),
            created_at=data.get("createdAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flowType": self.flow_type,
            "actionKey": self.action_key,
            "priority": self.priority,
            "isEnabled": self.is_enabled,
            "subjects": self.subjects.to_dict(),
            "stateConstraints": self.state_constraints.to_dict(),
            "guards": self.guards,
            "requireReason": self.require_reason,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def policy_sort_key(policy: ActionPolicy):
    """Sort key for (priority desc, created_at desc); undated policies sort last."""
    created = policy.created_at.timestamp() if policy.created_at else float("-inf")
    return (-policy.priority, -created)


@dataclass
class EvaluationInput:
    """
    Everything needed to decide whether an action is currently permitted.

    Args:
        flow_type: Business process of the document (invoice, estimate, ...)
        action_key: Attempted transition (approve, submit, ...)
        actor: Acting user with roles and groups
        state: Current entity state (status, projectId, workDate, ...)
        reason_text: Justification supplied by the actor
        target_table: Table of the target record, for target-aware guards
        target_id: Id of the target record
    """
    flow_type: str
    action_key: str
    actor: Actor = field(default_factory=Actor)
    state: Optional[Dict[str, Any]] = None
    reason_text: Optional[str] = None
    target_table: Optional[str] = None
    target_id: Optional[str] = None

    @property
    def normalized_action_key(self) -> str:
        return normalize_string(self.action_key)

    @property
    def normalized_reason(self) -> str:
        return normalize_string(self.reason_text)

    @property
    def has_target(self) -> bool:
        return bool(normalize_string(self.target_table) and normalize_string(self.target_id))
