"""Audit trail for reason-gated policy decisions.

When a policy-applied decision is allowed only because the actor gave a
justification (``require_reason``), the caller records an
``action_policy_override`` entry so the decision stays discoverable even
for routes without their own audit log.
"""

from typing import Any, Dict, Optional, Protocol
from dataclasses import dataclass, field

from .decision import FallbackDecision
from .definitions import EvaluationInput

OVERRIDE_AUDIT_ACTION = "action_policy_override"


@dataclass
class OverrideAuditEntry:
    """Audit payload for an override decision."""
    action: str
    target_table: Optional[str]
    target_id: Optional[str]
    user_id: Optional[str]
    reason_text: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


class AuditWriter(Protocol):
    def write(self, entry: OverrideAuditEntry) -> None:
        ...


def should_record_override(result: FallbackDecision) -> bool:
    """Only allowed, policy-applied, reason-gated results are audited."""
    return result.policy_applied and result.allowed and result.require_reason


def build_override_audit_entry(inp: EvaluationInput, result: FallbackDecision) -> OverrideAuditEntry:
    return OverrideAuditEntry(
        action=OVERRIDE_AUDIT_ACTION,
        target_table=inp.target_table,
        target_id=inp.target_id,
        user_id=inp.actor.user_id,
        reason_text=inp.normalized_reason or None,
        metadata={
            "flowType": inp.flow_type,
            "actionKey": inp.normalized_action_key,
            "matchedPolicyId": result.matched_policy_id,
            "guardOverride": result.guard_override,
            "guardFailures": [f.to_dict() for f in result.guard_failures],
        },
    )


def record_override_if_needed(
    writer: AuditWriter,
    inp: EvaluationInput,
    result: FallbackDecision,
) -> Optional[OverrideAuditEntry]:
    """
    Write an override audit entry when the result calls for one.

    Returns:
        The written entry, or None when nothing was recorded
    """
    if not should_record_override(result):
        return None
    entry = build_override_audit_entry(inp, result)
    writer.write(entry)
    return entry
