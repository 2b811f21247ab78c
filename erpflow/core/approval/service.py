"""Approval service for managing document approval workflows.

Provides a high-level API over the approval state machine, including
database persistence, action policy checks and audit logging.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from erpflow.core.config import Settings, get_settings
from erpflow.core.policy.audit import AuditWriter, record_override_if_needed
from erpflow.core.policy.decision import Decision
from erpflow.core.policy.definitions import Actor, EvaluationInput
from erpflow.core.policy.engine import ActionPolicyEngine

from .machine import ApprovalStateMachine, StepState
from .rules import build_approval_plan, select_approval_rule
from .states import ApprovalAction, DocStatus, PENDING_STATUSES, StepStatus
from .steps import stage_policy_from_json, stage_policy_to_json

logger = logging.getLogger(__name__)

APPROVAL_TARGET_TABLE = "approval_instances"
HISTORY_ACTION_PREFIX = "approval_"


class ActionDeniedError(Exception):
    """Raised when the action policy engine denies an approval action."""

    def __init__(self, decision: Decision):
        reason = decision.reason.value if decision.reason else "denied"
        super().__init__(f"Action denied: {reason}")
        self.decision = decision


class ApprovalNotFoundError(LookupError):
    """Raised when an approval instance does not exist."""

    def __init__(self, instance_id: str):
        super().__init__(f"Approval instance {instance_id} not found")
        self.instance_id = instance_id


class ApprovalService:
    """
    High-level service for managing approval instances.

    Handles:
    - Creating instances from approval rules (reusing an open one)
    - Policy-gated approve / reject / cancel with persistence
    - Override and action audit entries
    - Querying instances and their history
    """

    def __init__(
        self,
        db: Session,
        *,
        engine: Optional[ActionPolicyEngine] = None,
        settings: Optional[Settings] = None,
        audit_writer: Optional[AuditWriter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the approval service.

        Args:
            db: Database session
            engine: Policy engine gating actions (SQL-backed by default)
            settings: Application settings
            audit_writer: Destination for override audit entries
            clock: Time source for rule selection and timestamps
        """
        from erpflow.db.stores import SqlAuditWriter, build_policy_engine

        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.engine = engine or build_policy_engine(db, settings=self.settings, clock=self.clock)
        self.audit = audit_writer or SqlAuditWriter(db)

    def create_approval_for(
        self,
        flow_type: str,
        target_table: str,
        target_id: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        requested_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create the approval instance for a submitted record.

        An open instance for the same target is returned unchanged.

        Returns:
            Dictionary with instance details
        """
        from erpflow.db.base import new_id
        from erpflow.db.models import ApprovalInstance, ApprovalStep
        from erpflow.db.stores import SqlApprovalRuleStore

        existing = self._find_open_instance(flow_type, target_table, target_id)
        if existing is not None:
            logger.debug("Reusing open approval %s for %s/%s", existing.id, target_table, target_id)
            return self._instance_to_dict(existing)

        payload = dict(payload or {})
        rules = SqlApprovalRuleStore(self.db).list_active(flow_type)
        rule = select_approval_rule(flow_type, payload, rules, now=self.clock())
        plan = build_approval_plan(flow_type, payload, rule, settings=self.settings)

        machine = ApprovalStateMachine.start(
            new_id(),
            plan.normalized,
            exec_group_id=self.settings.exec_group_id,
            clock=self.clock,
        )
        instance = ApprovalInstance(
            id=machine.instance_id,
            flow_type=flow_type,
            target_table=target_table,
            target_id=target_id,
            rule_id=plan.rule_id,
            status=machine.status.value,
            current_step=machine.current_step,
            stage_policy=stage_policy_to_json(plan.normalized.stage_policy),
            payload=payload,
            requested_by=requested_by,
        )
        for step in machine.steps:
            instance.steps.append(
                ApprovalStep(
                    step_order=step.step_order,
                    approver_group_id=step.approver_group_id,
                    approver_user_id=step.approver_user_id,
                    status=step.status.value,
                )
            )
        self.db.add(instance)
        self.db.flush()

        logger.info(
            "Created approval %s for %s/%s (%d step(s), rule=%s)",
            instance.id, target_table, target_id, len(machine.steps), plan.rule_id,
        )
        return self._instance_to_dict(instance)

    def get_approval(self, instance_id: str) -> Optional[Dict[str, Any]]:
        """Get an approval instance by ID."""
        from erpflow.db.models import ApprovalInstance

        instance = self.db.get(ApprovalInstance, instance_id)
        return self._instance_to_dict(instance) if instance else None

    def act(
        self,
        instance_id: str,
        action: ApprovalAction,
        actor: Actor,
        *,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Perform an action on an approval instance.

        Args:
            instance_id: ID of the approval instance
            action: Action to perform
            actor: Acting user
            reason: Justification (comment) for the action
            metadata: Additional data recorded in history

        Returns:
            Updated approval instance

        Raises:
            ApprovalNotFoundError: If the instance does not exist
            ActionDeniedError: If the action policy engine denies the action
            TransitionError: If the action is invalid from the current status
            NotAnApproverError: If the actor cannot act at the current stage
        """
        from erpflow.db.models import ApprovalInstance

        action = ApprovalAction(action)
        instance = self.db.scalars(
            select(ApprovalInstance).where(ApprovalInstance.id == instance_id).with_for_update()
        ).first()
        if instance is None:
            raise ApprovalNotFoundError(instance_id)

        state = dict(instance.payload or {})
        state["status"] = instance.status
        inp = EvaluationInput(
            flow_type=instance.flow_type,
            action_key=action.value,
            actor=actor,
            state=state,
            reason_text=reason,
            target_table=APPROVAL_TARGET_TABLE,
            target_id=instance.id,
        )
        result = self.engine.evaluate_with_fallback(inp)
        if not result.allowed:
            logger.info(
                "Approval %s: %s by %s denied (%s)",
                instance.id, action.value, actor.user_id, result.reason.value if result.reason else None,
            )
            raise ActionDeniedError(result)
        record_override_if_needed(self.audit, inp, result)

        machine = self._load_machine(instance)
        machine.transition(action, actor, comment=reason, metadata=metadata)
        self._apply_machine(instance, machine)
        self._record_history(instance, machine.get_history(), reason)
        self.db.flush()

        return self._instance_to_dict(instance)

    def approve(self, instance_id: str, actor: Actor, *, reason: Optional[str] = None) -> Dict[str, Any]:
        return self.act(instance_id, ApprovalAction.APPROVE, actor, reason=reason)

    def reject(self, instance_id: str, actor: Actor, *, reason: Optional[str] = None) -> Dict[str, Any]:
        return self.act(instance_id, ApprovalAction.REJECT, actor, reason=reason)

    def cancel(self, instance_id: str, actor: Actor, *, reason: str) -> Dict[str, Any]:
        return self.act(instance_id, ApprovalAction.CANCEL, actor, reason=reason)

    def list_pending_for(self, actor: Actor, *, limit: int = 100) -> List[Dict[str, Any]]:
        """Open instances where the actor has a pending step at the current stage."""
        from erpflow.db.models import ApprovalInstance

        stmt = (
            select(ApprovalInstance)
            .where(ApprovalInstance.status.in_([s.value for s in PENDING_STATUSES]))
            .order_by(ApprovalInstance.created_at.asc())
        )
        results = []
        for instance in self.db.scalars(stmt):
            machine = self._load_machine(instance)
            if machine.find_actionable_step(actor) is not None:
                results.append(self._instance_to_dict(instance))
                if len(results) >= limit:
                    break
        return results

    def get_history(self, instance_id: str) -> List[Dict[str, Any]]:
        """Action history of an instance, oldest first."""
        from erpflow.db.models import AuditLog

        stmt = (
            select(AuditLog)
            .where(
                and_(
                    AuditLog.target_table == APPROVAL_TARGET_TABLE,
                    AuditLog.target_id == instance_id,
                    AuditLog.action.startswith(HISTORY_ACTION_PREFIX),
                )
            )
            .order_by(AuditLog.created_at.asc())
        )
        return [
            {
                "id": log.id,
                "action": log.action[len(HISTORY_ACTION_PREFIX):],
                "user_id": log.user_id,
                "comment": log.reason_text,
                "details": log.details or {},
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in self.db.scalars(stmt)
        ]

    def _find_open_instance(self, flow_type: str, target_table: str, target_id: str):
        from erpflow.db.models import ApprovalInstance

        stmt = (
            select(ApprovalInstance)
            .where(
                and_(
                    ApprovalInstance.flow_type == flow_type,
                    ApprovalInstance.target_table == target_table,
                    ApprovalInstance.target_id == target_id,
                    ApprovalInstance.status.in_([s.value for s in PENDING_STATUSES]),
                )
            )
            .order_by(ApprovalInstance.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    def _load_machine(self, instance) -> ApprovalStateMachine:
        steps = [
            StepState(
                step_order=row.step_order,
                approver_group_id=row.approver_group_id,
                approver_user_id=row.approver_user_id,
                status=StepStatus(row.status),
                acted_by=row.acted_by,
                acted_at=row.acted_at,
                comment=row.comment,
                id=row.id,
            )
            for row in instance.steps
        ]
        return ApprovalStateMachine(
            instance.id,
            DocStatus(instance.status),
            steps,
            current_step=instance.current_step,
            stage_policy=stage_policy_from_json(instance.stage_policy),
            exec_group_id=self.settings.exec_group_id,
            clock=self.clock,
        )

    def _apply_machine(self, instance, machine: ApprovalStateMachine) -> None:
        by_id = {step.id: step for step in machine.steps}
        for row in instance.steps:
            step = by_id.get(row.id)
            if step is None:
                continue
            row.status = step.status.value
            row.acted_by = step.acted_by
            row.acted_at = step.acted_at
            row.comment = step.comment
        instance.status = machine.status.value
        instance.current_step = machine.current_step
        instance.updated_at = self.clock()

    def _record_history(self, instance, records: List[Dict[str, Any]], reason: Optional[str]) -> None:
        from erpflow.db.models import AuditLog

        for record in records:
            self.db.add(
                AuditLog(
                    user_id=record["user_id"],
                    action=f"{HISTORY_ACTION_PREFIX}{record['action']}",
                    target_table=APPROVAL_TARGET_TABLE,
                    target_id=instance.id,
                    reason_text=reason,
                    details={
                        "fromStatus": record["from_status"],
                        "toStatus": record["to_status"],
                        "fromStep": record["from_step"],
                        "toStep": record["to_step"],
                        "metadata": record["metadata"],
                    },
                    created_at=record["timestamp"],
                )
            )

    def _instance_to_dict(self, instance) -> Dict[str, Any]:
        """Convert an ApprovalInstance model to dictionary."""
        return {
            "id": instance.id,
            "flow_type": instance.flow_type,
            "target_table": instance.target_table,
            "target_id": instance.target_id,
            "rule_id": instance.rule_id,
            "status": instance.status,
            "current_step": instance.current_step,
            "stage_policy": instance.stage_policy or {},
            "payload": instance.payload or {},
            "requested_by": instance.requested_by,
            "steps": [
                {
                    "id": row.id,
                    "step_order": row.step_order,
                    "approver_group_id": row.approver_group_id,
                    "approver_user_id": row.approver_user_id,
                    "status": row.status,
                    "acted_by": row.acted_by,
                    "comment": row.comment,
                }
                for row in instance.steps
            ],
            "created_at": instance.created_at.isoformat() if instance.created_at else None,
            "updated_at": instance.updated_at.isoformat() if instance.updated_at else None,
        }
