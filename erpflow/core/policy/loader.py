"""Loading action policies from YAML files.

A policy file holds a top-level ``policies`` list; each entry uses the
same camelCase fields as stored policies::

    policies:
      - id: estimate-approve-ack
        flowType: estimate
        actionKey: approve
        priority: 100
        subjects: {roles: [mgmt]}
        stateConstraints: {statusIn: [pending_qa, pending_exec]}
        guards: [chat_ack_completed]
        requireReason: false
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from erpflow.core.config import Settings, get_settings

from .definitions import (
    ActionPolicy,
    StateConstraints,
    SubjectFilter,
    normalize_string,
    policy_sort_key,
)


class PolicyConfigError(ValueError):
    """Raised when a policy file or entry is malformed."""


class PolicyDocument(BaseModel):
    """Schema of one authored policy entry."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    flow_type: str = Field(..., alias="flowType", min_length=1)
    action_key: str = Field(..., alias="actionKey", min_length=1)
    priority: int = 0
    is_enabled: bool = Field(True, alias="isEnabled")
    subjects: Optional[Dict[str, Any]] = None
    state_constraints: Optional[Dict[str, Any]] = Field(None, alias="stateConstraints")
    # Kept as authored; the engine fails closed on malformed guard lists.
    guards: Any = None
    require_reason: bool = Field(False, alias="requireReason")
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    def to_policy(self, default_id: str) -> ActionPolicy:
        return ActionPolicy(
            id=normalize_string(self.id) or default_id,
            flow_type=self.flow_type.strip(),
            action_key=self.action_key.strip(),
            priority=self.priority,
            is_enabled=self.is_enabled,
            subjects=SubjectFilter.from_dict(self.subjects),
            state_constraints=StateConstraints.from_dict(self.state_constraints),
            guards=self.guards,
            require_reason=self.require_reason,
            created_at=self.created_at,
        )


def parse_policies(data: Any) -> List[ActionPolicy]:
    """
    Parse a loaded policy document.

    Args:
        data: Mapping with a ``policies`` list (or the list itself)

    Returns:
        Parsed policies in file order

    Raises:
        PolicyConfigError: If the document or an entry is malformed
    """
    if isinstance(data, dict):
        entries = data.get("policies", [])
    else:
        entries = data
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise PolicyConfigError("'policies' must be a list")

    policies = []
    seen_ids = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise PolicyConfigError(f"Policy #{index + 1} must be a mapping")
        try:
            doc = PolicyDocument.model_validate(entry)
        except ValidationError as e:
            raise PolicyConfigError(f"Invalid policy #{index + 1}: {e}") from e

        policy = doc.to_policy(default_id=f"{doc.flow_type}:{doc.action_key}:{index + 1}")
        if policy.id in seen_ids:
            raise PolicyConfigError(f"Duplicate policy id: {policy.id}")
        seen_ids.add(policy.id)
        policies.append(policy)

    return policies


def load_policies(path: Union[str, Path]) -> List[ActionPolicy]:
    """Load policies from a YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Policy file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise PolicyConfigError(f"Invalid YAML in {config_path}: {e}") from e

    return parse_policies(data or {})


class StaticPolicyStore:
    """In-memory ``PolicyStore`` over a fixed list of policies."""

    def __init__(self, policies: Iterable[ActionPolicy]):
        self._policies = list(policies)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticPolicyStore":
        return cls(load_policies(path))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StaticPolicyStore":
        """Store over the configured ``policies_file``; empty when none is set."""
        settings = settings or get_settings()
        if not settings.policies_file:
            return cls([])
        return cls.from_file(settings.policies_file)

    def list_enabled(self, flow_type: str, action_key: str) -> List[ActionPolicy]:
        matching = [
            p for p in self._policies
            if p.is_enabled and p.flow_type == flow_type and p.action_key == action_key
        ]
        return sorted(matching, key=policy_sort_key)
