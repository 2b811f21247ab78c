"""Approval workflow module for erpflow.

Resolves approver ladders from approval rules and drives approval
instances through their stages.
"""

from .states import ApprovalAction, CompletionMode, DocStatus, StepStatus
from .steps import ApprovalStep, NormalizedSteps, StageCompletion, normalize_rule_steps, normalize_rule_steps_with_policy
from .rules import (
    ApprovalRuleDefinition,
    RuleCondition,
    build_approval_plan,
    match_approval_steps,
    matches_rule_condition,
    resolve_pending_status,
    select_approval_rule,
)
from .machine import ApprovalStateMachine, NotAnApproverError, TransitionError
from .service import ActionDeniedError, ApprovalNotFoundError, ApprovalService

__all__ = [
    "ActionDeniedError",
    "ApprovalAction",
    "ApprovalNotFoundError",
    "ApprovalRuleDefinition",
    "ApprovalService",
    "ApprovalStateMachine",
    "ApprovalStep",
    "CompletionMode",
    "DocStatus",
    "NormalizedSteps",
    "NotAnApproverError",
    "RuleCondition",
    "StageCompletion",
    "StepStatus",
    "TransitionError",
    "build_approval_plan",
    "match_approval_steps",
    "matches_rule_condition",
    "normalize_rule_steps",
    "normalize_rule_steps_with_policy",
    "resolve_pending_status",
    "select_approval_rule",
]
