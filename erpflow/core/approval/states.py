"""Approval instance statuses and transitions.

State Machine Diagram:

    ┌─────────┐  submit   ┌──────────────────────────┐
    │  DRAFT  │──────────►│ PENDING_QA / PENDING_EXEC │◄─┐
    └─────────┘           └────────────┬──────────────┘  │ stage complete,
                                       │                 │ next stage exists
                ┌──────────────┬───────┴──────┬──────────┘
                │              │              │
          ┌─────▼────┐   ┌─────▼────┐   ┌─────▼─────┐
          │ APPROVED │   │ REJECTED │   │ CANCELLED │
          └──────────┘   └──────────┘   └───────────┘

The pending status names the current stage's audience: PENDING_EXEC when
the stage is assigned to the executive group, PENDING_QA otherwise.
"""

from enum import Enum
from typing import Dict, NamedTuple, Optional, Set


class DocStatus(str, Enum):
    """Statuses shared by documents and their approval instances."""

    DRAFT = "draft"
    PENDING_QA = "pending_qa"
    PENDING_EXEC = "pending_exec"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Status of one approver slot in a stage."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"       # Stage completed before this approver acted
    CANCELLED = "cancelled"


class ApprovalAction(str, Enum):
    """Actions that change an approval instance."""

    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


class CompletionMode(str, Enum):
    """How many approvers of a stage must approve to complete it."""

    ALL = "all"
    ANY = "any"
    QUORUM = "quorum"


class TransitionRule(NamedTuple):
    """Defines a valid action from a status."""
    from_status: DocStatus
    action: ApprovalAction
    requires_comment: bool = False


TRANSITION_RULES: list[TransitionRule] = [
    TransitionRule(DocStatus.PENDING_QA, ApprovalAction.APPROVE),
    TransitionRule(DocStatus.PENDING_EXEC, ApprovalAction.APPROVE),
    TransitionRule(DocStatus.PENDING_QA, ApprovalAction.REJECT),
    TransitionRule(DocStatus.PENDING_EXEC, ApprovalAction.REJECT),
    TransitionRule(DocStatus.PENDING_QA, ApprovalAction.CANCEL, requires_comment=True),
    TransitionRule(DocStatus.PENDING_EXEC, ApprovalAction.CANCEL, requires_comment=True),
]

VALID_ACTIONS: Dict[DocStatus, Set[ApprovalAction]] = {}
TRANSITION_LOOKUP: Dict[tuple[DocStatus, ApprovalAction], TransitionRule] = {}

for rule in TRANSITION_RULES:
    VALID_ACTIONS.setdefault(rule.from_status, set()).add(rule.action)
    TRANSITION_LOOKUP[(rule.from_status, rule.action)] = rule


PENDING_STATUSES: Set[DocStatus] = {
    DocStatus.PENDING_QA,
    DocStatus.PENDING_EXEC,
}

TERMINAL_STATUSES: Set[DocStatus] = {
    DocStatus.APPROVED,
    DocStatus.REJECTED,
    DocStatus.CANCELLED,
}


def can_transition(status: DocStatus, action: ApprovalAction) -> bool:
    """Check if an action is valid from the given status."""
    return action in VALID_ACTIONS.get(status, set())


def get_transition_rule(status: DocStatus, action: ApprovalAction) -> Optional[TransitionRule]:
    """Get the transition rule for a status/action combination."""
    return TRANSITION_LOOKUP.get((status, action))
