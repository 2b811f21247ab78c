"""SQLAlchemy implementations of the policy engine's read interfaces.

Every method returns plain records from ``erpflow.core.policy.stores``;
ORM objects never leave this module. SQLite drops timezone information,
so naive datetimes read back are treated as UTC.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from erpflow.core.approval.rules import ApprovalRuleDefinition
from erpflow.core.approval.states import PENDING_STATUSES
from erpflow.core.config import Settings
from erpflow.core.policy.audit import OverrideAuditEntry
from erpflow.core.policy.definitions import (
    ActionPolicy,
    StateConstraints,
    SubjectFilter,
    normalize_string,
)
from erpflow.core.policy.engine import ActionPolicyEngine
from erpflow.core.policy.stores import (
    AckLinkRecord,
    AckRecord,
    AckRequestRecord,
    GuardSources,
    OpenApproval,
    PeriodLockRecord,
)
from erpflow.db import models

logger = logging.getLogger(__name__)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlPolicyStore:
    """Lists enabled action policies from ``action_policies``."""

    def __init__(self, db: Session):
        self.db = db

    def list_enabled(self, flow_type: str, action_key: str) -> List[ActionPolicy]:
        stmt = (
            select(models.ActionPolicy)
            .where(
                and_(
                    models.ActionPolicy.flow_type == flow_type,
                    models.ActionPolicy.action_key == action_key,
                    models.ActionPolicy.is_enabled.is_(True),
                )
            )
            .order_by(models.ActionPolicy.priority.desc(), models.ActionPolicy.created_at.desc())
        )
        return [self._to_policy(row) for row in self.db.scalars(stmt)]

    @staticmethod
    def _to_policy(row: models.ActionPolicy) -> ActionPolicy:
        return ActionPolicy(
            id=row.id,
            flow_type=normalize_string(row.flow_type),
            action_key=normalize_string(row.action_key),
            priority=row.priority or 0,
            is_enabled=bool(row.is_enabled),
            subjects=SubjectFilter.from_dict(row.subjects),
            state_constraints=StateConstraints.from_dict(row.state_constraints),
            guards=row.guards,
            require_reason=bool(row.require_reason),
            created_at=as_aware(row.created_at),
        )


class SqlGuardStore:
    """
    State providers for guard checks.

    Implements every interface of ``GuardSources`` over one session.
    """

    def __init__(self, db: Session):
        self.db = db

    # Approval instances

    def find_open(self, flow_type: str, target_table: str, target_id: str) -> Optional[OpenApproval]:
        stmt = (
            select(models.ApprovalInstance)
            .where(
                and_(
                    models.ApprovalInstance.flow_type == flow_type,
                    models.ApprovalInstance.target_table == target_table,
                    models.ApprovalInstance.target_id == target_id,
                    models.ApprovalInstance.status.in_([s.value for s in PENDING_STATUSES]),
                )
            )
            .order_by(models.ApprovalInstance.created_at.desc())
            .limit(1)
        )
        row = self.db.scalars(stmt).first()
        return OpenApproval(id=row.id, status=row.status) if row else None

    # Projects

    def find_closed_among(self, project_ids: Sequence[str]) -> List[str]:
        if not project_ids:
            return []
        stmt = select(models.Project.id).where(
            and_(
                models.Project.id.in_(list(project_ids)),
                models.Project.status == "closed",
            )
        )
        closed = set(self.db.scalars(stmt))
        return [pid for pid in project_ids if pid in closed]

    # Period locks

    def find_lock(self, period_key: str, project_id: Optional[str]) -> Optional[PeriodLockRecord]:
        scope_clause = models.PeriodLock.scope == "global"
        if project_id:
            scope_clause = or_(
                scope_clause,
                and_(models.PeriodLock.scope == "project", models.PeriodLock.project_id == project_id),
            )
        stmt = (
            select(models.PeriodLock)
            .where(and_(models.PeriodLock.period_key == period_key, scope_clause))
            .order_by(models.PeriodLock.created_at.asc())
            .limit(1)
        )
        row = self.db.scalars(stmt).first()
        return self._to_lock(row) if row else None

    def find_active(self, period_keys: Sequence[str], project_ids: Sequence[str]) -> List[PeriodLockRecord]:
        if not period_keys:
            return []
        scope_clause = models.PeriodLock.scope == "global"
        if project_ids:
            scope_clause = or_(
                scope_clause,
                and_(
                    models.PeriodLock.scope == "project",
                    models.PeriodLock.project_id.in_(list(project_ids)),
                ),
            )
        stmt = (
            select(models.PeriodLock)
            .where(and_(models.PeriodLock.period_key.in_(list(period_keys)), scope_clause))
            .order_by(models.PeriodLock.created_at.asc())
        )
        return [self._to_lock(row) for row in self.db.scalars(stmt)]

    @staticmethod
    def _to_lock(row: models.PeriodLock) -> PeriodLockRecord:
        return PeriodLockRecord(
            id=row.id,
            period_key=row.period_key,
            scope=row.scope,
            project_id=row.project_id,
        )

    # Worklog settings

    def get_editable_days(self) -> Optional[int]:
        stmt = select(models.WorklogSetting).order_by(models.WorklogSetting.updated_at.desc()).limit(1)
        row = self.db.scalars(stmt).first()
        if row is None or not isinstance(row.editable_days, int):
            return None
        return row.editable_days

    # Chat acknowledgements

    def find_by_target(self, target_table: str, target_id: str) -> List[AckLinkRecord]:
        stmt = (
            select(models.ChatAckLink)
            .where(
                and_(
                    models.ChatAckLink.target_table == target_table,
                    models.ChatAckLink.target_id == target_id,
                )
            )
            .order_by(models.ChatAckLink.created_at.asc())
        )
        return [
            AckLinkRecord(
                id=row.id,
                ack_request_id=row.ack_request_id,
                target_table=row.target_table,
                target_id=row.target_id,
            )
            for row in self.db.scalars(stmt)
        ]

    def find_by_ids(self, ids: Sequence[str]) -> List[AckRequestRecord]:
        if not ids:
            return []
        stmt = (
            select(models.ChatAckRequest)
            .options(selectinload(models.ChatAckRequest.message))
            .where(models.ChatAckRequest.id.in_(list(ids)))
        )
        records = []
        for row in self.db.scalars(stmt):
            message = row.message
            records.append(
                AckRequestRecord(
                    id=row.id,
                    message_id=row.message_id,
                    required_user_ids=[str(u) for u in (row.required_user_ids or [])],
                    due_at=as_aware(row.due_at),
                    canceled_at=as_aware(row.canceled_at),
                    message_deleted=message is not None and message.deleted_at is not None,
                )
            )
        return records

    def find_by_request(self, request_ids: Sequence[str]) -> List[AckRecord]:
        if not request_ids:
            return []
        stmt = select(models.ChatAck).where(models.ChatAck.request_id.in_(list(request_ids)))
        return [AckRecord(ack_request_id=row.request_id, user_id=row.user_id) for row in self.db.scalars(stmt)]


class SqlApprovalRuleStore:
    """Reads approval rules for rule selection."""

    def __init__(self, db: Session):
        self.db = db

    def list_active(self, flow_type: str) -> List[ApprovalRuleDefinition]:
        stmt = select(models.ApprovalRule).where(
            and_(
                models.ApprovalRule.flow_type == flow_type,
                models.ApprovalRule.is_active.is_(True),
            )
        )
        return [
            ApprovalRuleDefinition(
                id=row.id,
                flow_type=row.flow_type,
                conditions=row.conditions or {},
                steps=row.steps,
                is_active=bool(row.is_active),
                effective_from=as_aware(row.effective_from),
                created_at=as_aware(row.created_at),
            )
            for row in self.db.scalars(stmt)
        ]


class SqlAuditWriter:
    """Appends audit entries to ``audit_logs``."""

    def __init__(self, db: Session):
        self.db = db

    def write(self, entry: OverrideAuditEntry) -> None:
        self.db.add(
            models.AuditLog(
                user_id=entry.user_id,
                action=entry.action,
                target_table=entry.target_table,
                target_id=entry.target_id,
                reason_text=entry.reason_text,
                details=entry.metadata,
            )
        )
        self.db.flush()
        logger.debug("Audit %s recorded for %s/%s", entry.action, entry.target_table, entry.target_id)


def build_policy_engine(
    db: Session,
    *,
    settings: Optional[Settings] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> ActionPolicyEngine:
    """Create a policy engine reading policies and guard state from ``db``."""
    return ActionPolicyEngine(
        SqlPolicyStore(db),
        GuardSources.single(SqlGuardStore(db)),
        settings=settings,
        clock=clock,
    )
