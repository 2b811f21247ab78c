"""Approval state machine implementation.

Advances an approval instance through its stages, honouring each stage's
completion mode, and records a history entry for every action.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass

from erpflow.core.policy.definitions import Actor
from erpflow.core.rbac import RoleChecker

from .rules import resolve_pending_status
from .states import (
    ApprovalAction,
    DocStatus,
    StepStatus,
    TERMINAL_STATUSES,
    can_transition,
    get_transition_rule,
)
from .steps import NormalizedSteps, StageCompletion, StagePolicy

logger = logging.getLogger(__name__)


class TransitionError(Exception):
    """Raised when an action is invalid from the current status."""

    def __init__(self, message: str, from_status: DocStatus, action: ApprovalAction):
        super().__init__(message)
        self.from_status = from_status
        self.action = action


class NotAnApproverError(Exception):
    """Raised when the actor has no pending step at the current stage."""

    def __init__(self, user_id: Optional[str], step_order: Optional[int]):
        super().__init__(f"User {user_id} is not an approver at step {step_order}")
        self.user_id = user_id
        self.step_order = step_order


@dataclass
class StepState:
    """Runtime state of one approver slot."""
    step_order: int
    approver_group_id: Optional[str] = None
    approver_user_id: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    acted_by: Optional[str] = None
    acted_at: Optional[datetime] = None
    comment: Optional[str] = None
    id: Optional[str] = None

    def is_eligible(self, actor: Actor) -> bool:
        """Check if the actor may act on this slot."""
        if self.approver_user_id:
            return bool(actor.user_id) and actor.user_id == self.approver_user_id
        checker = RoleChecker(actor.roles, actor.group_ids)
        return checker.in_group(self.approver_group_id)


class ApprovalStateMachine:
    """
    State machine for a staged approval instance.

    Manages:
    - Validation of actions against the status transition table
    - Approver eligibility at the current stage
    - Stage completion by mode (all / any / quorum)
    - History records and callback hooks for side effects
    """

    def __init__(
        self,
        instance_id: str,
        status: DocStatus,
        steps: List[StepState],
        *,
        current_step: Optional[int] = None,
        stage_policy: Optional[StagePolicy] = None,
        exec_group_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the state machine.

        Args:
            instance_id: ID of the approval instance
            status: Current instance status
            steps: Approver slots of every stage
            current_step: Order of the stage awaiting action
            stage_policy: Completion policy per stage order
            exec_group_id: Group whose stages report PENDING_EXEC
            clock: Time source for step and history timestamps
        """
        self.instance_id = instance_id
        self._status = DocStatus(status)
        self.steps = sorted(steps, key=lambda s: s.step_order)
        self.current_step = current_step
        self.stage_policy = dict(stage_policy or {})
        self.exec_group_id = exec_group_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._history: List[Dict[str, Any]] = []
        self._callbacks: Dict[ApprovalAction, List[Callable[[Dict[str, Any]], None]]] = {}

    @classmethod
    def start(
        cls,
        instance_id: str,
        plan: NormalizedSteps,
        *,
        exec_group_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "ApprovalStateMachine":
        """Create a machine positioned at the first stage of a plan."""
        steps = [
            StepState(s.step_order, s.approver_group_id, s.approver_user_id)
            for s in plan.steps
        ]
        orders = plan.orders
        first = orders[0] if orders else None
        status = (
            resolve_pending_status(plan.steps, first, exec_group_id=exec_group_id)
            if first is not None else DocStatus.APPROVED
        )
        return cls(
            instance_id,
            status,
            steps,
            current_step=first,
            stage_policy=plan.stage_policy,
            exec_group_id=exec_group_id,
            clock=clock,
        )

    @property
    def status(self) -> DocStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def orders(self) -> List[int]:
        return sorted({s.step_order for s in self.steps})

    def stage_steps(self, order: Optional[int] = None) -> List[StepState]:
        """Slots of a stage (the current one by default)."""
        order = self.current_step if order is None else order
        return [s for s in self.steps if s.step_order == order]

    def completion_for(self, order: int) -> StageCompletion:
        return self.stage_policy.get(order, StageCompletion())

    def approvers_at(self, order: Optional[int] = None) -> Set[str]:
        """Distinct users who approved a slot of a stage (the current one by default)."""
        return {
            s.acted_by for s in self.stage_steps(order)
            if s.status == StepStatus.APPROVED and s.acted_by
        }

    def find_actionable_step(self, actor: Actor) -> Optional[StepState]:
        """
        First pending slot at the current stage the actor may act on.

        A user who already approved at this stage has no further slot there,
        even when they match several of its approvers.
        """
        if actor.user_id and actor.user_id in self.approvers_at():
            return None
        for step in self.stage_steps():
            if step.status == StepStatus.PENDING and step.is_eligible(actor):
                return step
        return None

    def can_perform(self, action: ApprovalAction, actor: Actor) -> bool:
        """Check if an action is possible now for the actor."""
        if not can_transition(self._status, action):
            return False
        if action == ApprovalAction.CANCEL:
            return True
        return self.find_actionable_step(actor) is not None

    def transition(
        self,
        action: ApprovalAction,
        actor: Actor,
        *,
        comment: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DocStatus:
        """
        Perform an action on the instance.

        Args:
            action: Action to perform
            actor: Acting user
            comment: Comment (required for cancellation)
            metadata: Additional data recorded in history

        Returns:
            The new instance status

        Raises:
            TransitionError: If the action is invalid from the current status
            NotAnApproverError: If the actor cannot act at the current stage
        """
        action = ApprovalAction(action)
        if not can_transition(self._status, action):
            raise TransitionError(
                f"Cannot {action.value} from status {self._status.value}",
                self._status,
                action,
            )

        rule = get_transition_rule(self._status, action)
        if rule and rule.requires_comment and not (comment or "").strip():
            raise TransitionError(
                f"Action {action.value} requires a comment",
                self._status,
                action,
            )

        from_status = self._status
        from_step = self.current_step
        now = self._clock()

        if action == ApprovalAction.CANCEL:
            self._close_pending(StepStatus.CANCELLED)
            self._status = DocStatus.CANCELLED
            self.current_step = None
        else:
            step = self.find_actionable_step(actor)
            if step is None:
                raise NotAnApproverError(actor.user_id, self.current_step)
            step.acted_by = actor.user_id
            step.acted_at = now
            step.comment = comment
            if action == ApprovalAction.REJECT:
                step.status = StepStatus.REJECTED
                self._close_pending(StepStatus.CANCELLED)
                self._status = DocStatus.REJECTED
                self.current_step = None
            else:
                step.status = StepStatus.APPROVED
                self._advance_if_complete()

        record = {
            "id": str(uuid.uuid4()),
            "instance_id": self.instance_id,
            "action": action.value,
            "from_status": from_status.value,
            "to_status": self._status.value,
            "from_step": from_step,
            "to_step": self.current_step,
            "user_id": actor.user_id,
            "comment": comment,
            "metadata": metadata or {},
            "timestamp": now,
        }
        self._history.append(record)
        logger.info(
            "Approval %s: %s by %s (%s -> %s)",
            self.instance_id, action.value, actor.user_id, from_status.value, self._status.value,
        )
        self._execute_callbacks(action, record)
        return self._status

    def register_callback(
        self,
        action: ApprovalAction,
        callback: Callable[[Dict[str, Any]], None],
    ) -> None:
        """
        Register a callback to be executed after an action.

        Args:
            action: The action to hook
            callback: Function called with the history record
        """
        self._callbacks.setdefault(action, []).append(callback)

    def get_history(self) -> List[Dict[str, Any]]:
        """Get the history records produced by this machine."""
        return self._history.copy()

    def _advance_if_complete(self) -> None:
        order = self.current_step
        stage = self.stage_steps(order)
        anonymous = sum(1 for s in stage if s.status == StepStatus.APPROVED and not s.acted_by)
        approved = len(self.approvers_at(order)) + anonymous
        required = self.completion_for(order).required_approvals(len(stage))
        if approved < required:
            return

        for step in stage:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED

        later = [o for o in self.orders if o > order]
        if later:
            self.current_step = later[0]
            self._status = resolve_pending_status(
                self.steps, self.current_step, exec_group_id=self.exec_group_id
            )
        else:
            self.current_step = None
            self._status = DocStatus.APPROVED

    def _close_pending(self, status: StepStatus) -> None:
        for step in self.steps:
            if step.status == StepStatus.PENDING:
                step.status = status

    def _execute_callbacks(self, action: ApprovalAction, record: Dict[str, Any]) -> None:
        for callback in self._callbacks.get(action, []):
            try:
                callback(record)
            except Exception:
                # Action already applied; hooks cannot roll it back.
                logger.exception("Callback error for %s on %s", action.value, self.instance_id)
