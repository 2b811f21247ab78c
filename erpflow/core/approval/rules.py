"""Approval rule conditions and default approver ladders.

A rule condition is a pure predicate over a submitted document payload.
Rules with an explicit step definition use it; otherwise the default
ladder is derived from the amount:

- amount below ``skipUnder``                      -> mgmt only
- recurring and amount below ``execThreshold``    -> mgmt only
- otherwise mgmt, plus exec when amount >= ``execThreshold``
"""

import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Union
from dataclasses import dataclass, field

from erpflow.core.config import Settings, get_settings

from .states import DocStatus
from .steps import (
    ApprovalStep,
    NormalizedSteps,
    StageCompletion,
    normalize_rule_steps_with_policy,
)

logger = logging.getLogger(__name__)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _first_not_none(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def extract_amount(payload: Dict[str, Any]) -> float:
    """``totalAmount`` (or ``amount``) as a number; 0 when absent or not numeric."""
    raw = _first_not_none(payload.get("totalAmount"), payload.get("amount"), 0)
    amount = _as_number(raw)
    return amount if amount is not None else 0.0


def is_recurring_payload(payload: Dict[str, Any]) -> bool:
    return bool(_first_not_none(payload.get("recurring"), payload.get("isRecurring")))


def normalize_flow_flags(value: Any) -> Optional[Set[str]]:
    """Flow types a condition applies to, from a list or a ``{flag: bool}`` map."""
    if not value:
        return None
    if isinstance(value, dict):
        flags = {str(k) for k, enabled in value.items() if enabled}
    elif isinstance(value, (list, tuple, set)):
        flags = {str(v) for v in value}
    else:
        return None
    return flags or None


@dataclass
class RuleCondition:
    """Conditions attached to an approval rule."""
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    skip_under: Optional[float] = None
    exec_threshold: Optional[float] = None
    is_recurring: Optional[bool] = None
    project_type: Optional[str] = None
    customer_id: Optional[str] = None
    org_unit_id: Optional[str] = None
    flow_flags: Optional[Set[str]] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RuleCondition":
        """Create a condition from stored JSON, accepting the legacy key aliases."""
        if not isinstance(data, dict):
            return cls()
        recurring = data.get("isRecurring")
        return cls(
            amount_min=_as_number(_first_not_none(data.get("amountMin"), data.get("minAmount"))),
            amount_max=_as_number(_first_not_none(data.get("amountMax"), data.get("maxAmount"))),
            skip_under=_as_number(_first_not_none(data.get("skipUnder"), data.get("skipSmallUnder"))),
            exec_threshold=_as_number(data.get("execThreshold")),
            is_recurring=recurring if isinstance(recurring, bool) else None,
            project_type=data.get("projectType") or None,
            customer_id=data.get("customerId") or None,
            org_unit_id=data.get("orgUnitId") or None,
            flow_flags=normalize_flow_flags(_first_not_none(data.get("flowFlags"), data.get("appliesTo"))),
        )


ConditionLike = Union[RuleCondition, Dict[str, Any], None]


def _coerce_condition(condition: ConditionLike) -> Optional[RuleCondition]:
    if condition is None or isinstance(condition, RuleCondition):
        return condition
    return RuleCondition.from_dict(condition)


def matches_rule_condition(flow_type: str, payload: Dict[str, Any], condition: ConditionLike = None) -> bool:
    """
    Check whether a payload satisfies a rule condition.

    Args:
        flow_type: Flow type of the submitted document
        payload: Submitted document payload
        condition: RuleCondition or its stored JSON form

    Returns:
        True when every present clause matches (no condition matches all)
    """
    cond = _coerce_condition(condition)
    if cond is None:
        return True
    amount = extract_amount(payload)
    if cond.amount_min is not None and amount < cond.amount_min:
        return False
    if cond.amount_max is not None and amount > cond.amount_max:
        return False
    if cond.is_recurring is not None and is_recurring_payload(payload) != cond.is_recurring:
        return False
    if cond.project_type and payload.get("projectType") != cond.project_type:
        return False
    if cond.customer_id and payload.get("customerId") != cond.customer_id:
        return False
    if cond.org_unit_id and payload.get("orgUnitId") != cond.org_unit_id:
        return False
    if cond.flow_flags and flow_type not in cond.flow_flags:
        return False
    return True


def match_approval_steps(
    flow_type: str,
    payload: Dict[str, Any],
    condition: ConditionLike = None,
    *,
    settings: Optional[Settings] = None,
) -> List[ApprovalStep]:
    """
    Build the default approver ladder for a payload.

    Args:
        flow_type: Flow type of the submitted document
        payload: Submitted document payload (``totalAmount``/``amount``, ``recurring``)
        condition: Optional thresholds overriding the configured defaults

    Returns:
        Steps: mgmt at order 1, plus exec at order 2 for large amounts
    """
    settings = settings or get_settings()
    cond = _coerce_condition(condition) or RuleCondition()

    amount = extract_amount(payload)
    recurring = cond.is_recurring if cond.is_recurring is not None else is_recurring_payload(payload)
    exec_threshold = _first_not_none(cond.exec_threshold, settings.approval_exec_threshold)
    skip_under = _first_not_none(cond.skip_under, settings.approval_skip_under)

    mgmt = ApprovalStep(step_order=1, approver_group_id=settings.mgmt_group_id)
    if amount < skip_under:
        return [mgmt]
    if recurring and amount < exec_threshold:
        return [mgmt]

    steps = [mgmt]
    if amount >= exec_threshold:
        steps.append(ApprovalStep(step_order=2, approver_group_id=settings.exec_group_id))
    logger.debug("Default ladder for %s amount=%s: %d stage(s)", flow_type, amount, len(steps))
    return steps


def _step_fields(step: Any) -> tuple:
    if isinstance(step, dict):
        return step.get("stepOrder"), step.get("approverGroupId")
    return getattr(step, "step_order", None), getattr(step, "approver_group_id", None)


def resolve_pending_status(
    steps: Iterable[Any],
    step_order: Optional[int],
    *,
    exec_group_id: Optional[str] = None,
) -> DocStatus:
    """
    Pending status for the stage at ``step_order``.

    Args:
        steps: ApprovalStep objects or ``{"stepOrder", "approverGroupId"}`` dicts
        step_order: Current stage (None/0 when there is none)

    Returns:
        PENDING_EXEC when a step at that order is assigned to the exec group,
        PENDING_QA otherwise
    """
    if not step_order:
        return DocStatus.PENDING_QA
    exec_group_id = exec_group_id or get_settings().exec_group_id
    for step in steps:
        order, group_id = _step_fields(step)
        if order == step_order and group_id == exec_group_id:
            return DocStatus.PENDING_EXEC
    return DocStatus.PENDING_QA


@dataclass
class ApprovalRuleDefinition:
    """An approval rule as read from storage."""
    id: str
    flow_type: str
    conditions: Dict[str, Any] = field(default_factory=dict)
    steps: Any = None
    is_active: bool = True
    effective_from: Optional[datetime] = None
    created_at: Optional[datetime] = None


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return float("-inf")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def select_approval_rule(
    flow_type: str,
    payload: Dict[str, Any],
    rules: Iterable[ApprovalRuleDefinition],
    *,
    now: Optional[datetime] = None,
) -> Optional[ApprovalRuleDefinition]:
    """
    Pick the rule for a submission.

    Active rules of the flow type that are already effective are ordered
    by (effective_from desc, created_at desc); the first whose conditions
    match wins.
    """
    now_ts = _timestamp(now or datetime.now(timezone.utc))
    candidates = [
        r for r in rules
        if r.is_active and r.flow_type == flow_type and _timestamp(r.effective_from) <= now_ts
    ]
    candidates.sort(key=lambda r: (_timestamp(r.effective_from), _timestamp(r.created_at)), reverse=True)
    for rule in candidates:
        if matches_rule_condition(flow_type, payload, rule.conditions):
            return rule
    return None


@dataclass
class ApprovalPlan:
    """The ladder a new approval instance starts with."""
    rule_id: Optional[str]
    normalized: NormalizedSteps
    from_definition: bool

    @property
    def steps(self) -> List[ApprovalStep]:
        return self.normalized.steps


def build_approval_plan(
    flow_type: str,
    payload: Dict[str, Any],
    rule: Optional[ApprovalRuleDefinition],
    *,
    settings: Optional[Settings] = None,
) -> ApprovalPlan:
    """
    Resolve the approver ladder for a submission.

    The rule's own step definition is used when it normalizes; otherwise
    the default ladder is built from the rule's condition thresholds.
    """
    if rule is not None:
        normalized = normalize_rule_steps_with_policy(rule.steps)
        if normalized is not None:
            return ApprovalPlan(rule_id=rule.id, normalized=normalized, from_definition=True)
        if rule.steps:
            logger.warning("Rule %s has an unusable step definition; using default ladder", rule.id)

    condition = rule.conditions if rule is not None else None
    steps = match_approval_steps(flow_type, payload, condition, settings=settings)
    stage_policy = {s.step_order: StageCompletion() for s in steps}
    return ApprovalPlan(
        rule_id=rule.id if rule is not None else None,
        normalized=NormalizedSteps(steps=steps, stage_policy=stage_policy),
        from_definition=False,
    )
