"""Approval step definitions and their normalization.

Approval rules store their approver ladder in one of two shapes:

Legacy flat list::

    [{"approverGroupId": "mgmt"},
     {"approverUserId": "u-7", "parallelKey": "finance"},
     {"approverGroupId": "finance", "parallelKey": "finance"}]

Staged definition::

    {"stages": [
        {"order": 1, "completion": {"mode": "quorum", "quorum": 2},
         "approvers": [{"type": "group", "id": "mgmt"},
                       {"type": "user", "id": "u-7"},
                       {"type": "user", "id": "u-9"}]},
        {"order": 2, "approvers": [{"type": "group", "id": "exec"}]}]}

Both are parsed into ``NormalizedSteps`` so that downstream code never
branches on the stored shape.
"""

import math
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from .states import CompletionMode


@dataclass
class ApprovalStep:
    """One approver slot: a group or a single user at a 1-based stage order."""
    step_order: int
    approver_group_id: Optional[str] = None
    approver_user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"stepOrder": self.step_order}
        if self.approver_group_id:
            data["approverGroupId"] = self.approver_group_id
        if self.approver_user_id:
            data["approverUserId"] = self.approver_user_id
        return data


@dataclass
class StageCompletion:
    """Completion policy of one stage."""
    mode: CompletionMode = CompletionMode.ALL
    quorum: Optional[int] = None

    def required_approvals(self, approver_count: int) -> int:
        """Number of approvals that completes a stage with ``approver_count`` slots."""
        if self.mode == CompletionMode.ANY:
            return min(1, approver_count)
        if self.mode == CompletionMode.QUORUM and self.quorum is not None:
            return min(self.quorum, approver_count)
        return approver_count

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"mode": self.mode.value}
        if self.mode == CompletionMode.QUORUM:
            data["quorum"] = self.quorum
        return data


StagePolicy = Dict[int, StageCompletion]


@dataclass
class NormalizedSteps:
    """Ordered approver steps plus the completion policy of every stage."""
    steps: List[ApprovalStep] = field(default_factory=list)
    stage_policy: StagePolicy = field(default_factory=dict)

    @property
    def orders(self) -> List[int]:
        return sorted({s.step_order for s in self.steps})

    def steps_at(self, order: int) -> List[ApprovalStep]:
        return [s for s in self.steps if s.step_order == order]

    def completion_for(self, order: int) -> StageCompletion:
        return self.stage_policy.get(order, StageCompletion())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "stagePolicy": stage_policy_to_json(self.stage_policy),
        }


def stage_policy_to_json(policy: StagePolicy) -> Dict[str, Any]:
    """JSON-friendly stage policy (string keys)."""
    return {str(order): completion.to_dict() for order, completion in sorted(policy.items())}


def stage_policy_from_json(data: Any) -> StagePolicy:
    """Read a stored stage policy; unknown or malformed entries default to ``all``."""
    policy: StagePolicy = {}
    if not isinstance(data, dict):
        return policy
    for key, value in data.items():
        order = _as_order(key)
        if order is None:
            continue
        completion = _parse_completion(value, approver_count=None)
        policy[order] = completion or StageCompletion()
    return policy


def _clean_id(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_order(value: Any) -> Optional[int]:
    """Return a positive integer order, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 1 else None
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and value >= 1:
            return int(value)
        return None
    if isinstance(value, str) and value.strip().isdigit():
        order = int(value.strip())
        return order if order >= 1 else None
    return None


def _has_explicit_order(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value) and value.is_integer()


# ---------------------------------------------------------------------------
# Legacy flat list
# ---------------------------------------------------------------------------


def normalize_legacy_steps(raw: Any) -> Optional[NormalizedSteps]:
    """
    Normalize a legacy flat step list.

    Entries without an approver are dropped. Ordering:
    - any entry with an explicit integer ``stepOrder``: explicit orders are
      used, invalid ones fall back to the 1-based list position;
    - else any entry with a ``parallelKey``: entries sharing a key share one
      stage, stages numbered in first-seen order;
    - else one stage per entry.

    Every resulting stage completes when all of its approvers approve.

    Returns:
        NormalizedSteps, or None when the list holds no usable entry
    """
    if not isinstance(raw, list):
        return None

    entries: List[Tuple[Dict[str, Any], Optional[str], Optional[str]]] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        group_id = _clean_id(item.get("approverGroupId"))
        user_id = _clean_id(item.get("approverUserId"))
        if not (group_id or user_id):
            continue
        # A slot is either a group or a user; the group wins when both are given.
        entries.append((item, group_id, None if group_id else user_id))

    if not entries:
        return None

    has_explicit_order = any(_has_explicit_order(item.get("stepOrder")) for item, _, _ in entries)
    has_parallel_key = any(_clean_id(item.get("parallelKey")) for item, _, _ in entries)

    steps: List[ApprovalStep] = []
    if has_explicit_order:
        for idx, (item, group_id, user_id) in enumerate(entries):
            order = _as_order(item.get("stepOrder")) or idx + 1
            steps.append(ApprovalStep(order, group_id, user_id))
    elif has_parallel_key:
        order_map: Dict[str, int] = {}
        for idx, (item, group_id, user_id) in enumerate(entries):
            key = _clean_id(item.get("parallelKey")) or f"__seq_{idx}"
            if key not in order_map:
                order_map[key] = len(order_map) + 1
            steps.append(ApprovalStep(order_map[key], group_id, user_id))
    else:
        for idx, (_, group_id, user_id) in enumerate(entries):
            steps.append(ApprovalStep(idx + 1, group_id, user_id))

    stage_policy = {order: StageCompletion() for order in sorted({s.step_order for s in steps})}
    return NormalizedSteps(steps=steps, stage_policy=stage_policy)


# ---------------------------------------------------------------------------
# Staged definition
# ---------------------------------------------------------------------------


def _parse_completion(raw: Any, approver_count: Optional[int]) -> Optional[StageCompletion]:
    """Parse a completion spec; None when invalid. ``approver_count`` bounds the quorum."""
    if raw is None:
        return StageCompletion()
    if isinstance(raw, str):
        raw = {"mode": raw}
    if not isinstance(raw, dict):
        return None

    mode_value = raw.get("mode", CompletionMode.ALL.value)
    try:
        mode = CompletionMode(mode_value)
    except ValueError:
        return None

    if mode != CompletionMode.QUORUM:
        return StageCompletion(mode=mode)

    quorum = raw.get("quorum")
    if isinstance(quorum, bool) or not isinstance(quorum, int):
        return None
    if quorum < 1:
        return None
    if approver_count is not None and quorum > approver_count:
        return None
    return StageCompletion(mode=mode, quorum=quorum)


def _parse_approvers(raw: Any) -> Optional[List[Tuple[str, str]]]:
    """Distinct (type, id) approvers of a stage; None when any entry is invalid."""
    if not isinstance(raw, list) or not raw:
        return None
    approvers: List[Tuple[str, str]] = []
    for item in raw:
        if not isinstance(item, dict):
            return None
        approver_type = item.get("type")
        approver_id = _clean_id(item.get("id"))
        if approver_type not in ("group", "user") or approver_id is None:
            return None
        if (approver_type, approver_id) not in approvers:
            approvers.append((approver_type, approver_id))
    return approvers


def normalize_staged_definition(raw: Any) -> Optional[NormalizedSteps]:
    """
    Normalize a staged step definition.

    Validation is all-or-nothing: a malformed stage, a duplicate or
    non-positive order, an empty approver list, an unknown completion mode
    or a quorum outside ``1..approver_count`` rejects the whole definition.

    Returns:
        NormalizedSteps ordered by stage, or None when invalid
    """
    if not isinstance(raw, dict):
        return None
    stages = raw.get("stages")
    if not isinstance(stages, list) or not stages:
        return None

    parsed: Dict[int, Tuple[List[Tuple[str, str]], StageCompletion]] = {}
    for stage in stages:
        if not isinstance(stage, dict):
            return None
        order = stage.get("order")
        if isinstance(order, bool) or not isinstance(order, int) or order < 1:
            return None
        if order in parsed:
            return None
        approvers = _parse_approvers(stage.get("approvers"))
        if approvers is None:
            return None
        completion = _parse_completion(stage.get("completion"), approver_count=len(approvers))
        if completion is None:
            return None
        parsed[order] = (approvers, completion)

    steps: List[ApprovalStep] = []
    stage_policy: StagePolicy = {}
    for order in sorted(parsed):
        approvers, completion = parsed[order]
        for approver_type, approver_id in approvers:
            if approver_type == "group":
                steps.append(ApprovalStep(order, approver_group_id=approver_id))
            else:
                steps.append(ApprovalStep(order, approver_user_id=approver_id))
        stage_policy[order] = completion

    return NormalizedSteps(steps=steps, stage_policy=stage_policy)


def normalize_rule_steps_with_policy(raw: Any) -> Optional[NormalizedSteps]:
    """
    Normalize either stored step shape.

    Returns:
        NormalizedSteps, or None when the definition is unusable and the
        caller should fall back to the default ladder
    """
    if isinstance(raw, list):
        return normalize_legacy_steps(raw)
    if isinstance(raw, dict):
        return normalize_staged_definition(raw)
    return None


def normalize_rule_steps(raw: Any) -> Optional[List[ApprovalStep]]:
    """Like ``normalize_rule_steps_with_policy`` but returns only the steps."""
    normalized = normalize_rule_steps_with_policy(raw)
    return normalized.steps if normalized else None
