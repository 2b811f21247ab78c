"""Read interfaces the policy engine consumes.

The engine never owns persistence. Each store below is implemented by the
host application (see ``erpflow.db.stores`` for the SQLAlchemy adapters);
tests use in-memory fakes. All methods are read-only and are expected to
return plain records, not ORM objects.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Sequence
from dataclasses import dataclass, field

from .definitions import ActionPolicy


@dataclass
class OpenApproval:
    """A pending approval instance."""
    id: str
    status: str


@dataclass
class PeriodLockRecord:
    """An active period lock, global or scoped to one project."""
    id: str
    period_key: str
    scope: str                      # "global" or "project"
    project_id: Optional[str] = None

    def covers(self, period_key: str, project_id: Optional[str]) -> bool:
        if self.period_key != period_key:
            return False
        if self.scope == "global":
            return True
        return self.scope == "project" and project_id is not None and self.project_id == project_id


@dataclass
class AckLinkRecord:
    """Link between an acknowledgement request and a target record."""
    id: str
    ack_request_id: str
    target_table: str
    target_id: str


@dataclass
class AckRequestRecord:
    """An acknowledgement-required chat message."""
    id: str
    message_id: Optional[str] = None
    required_user_ids: List[str] = field(default_factory=list)
    due_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    message_deleted: bool = False

    @property
    def is_active(self) -> bool:
        return self.canceled_at is None and not self.message_deleted


@dataclass
class AckRecord:
    """One recipient's acknowledgement of a request."""
    ack_request_id: str
    user_id: str


class PolicyStore(Protocol):
    def list_enabled(self, flow_type: str, action_key: str) -> List[ActionPolicy]:
        """Enabled policies ordered by (priority desc, created_at desc)."""
        ...


class ApprovalInstanceStore(Protocol):
    def find_open(self, flow_type: str, target_table: str, target_id: str) -> Optional[OpenApproval]:
        ...


class ProjectStore(Protocol):
    def find_closed_among(self, project_ids: Sequence[str]) -> List[str]:
        """Ids from ``project_ids`` whose project status is closed."""
        ...


class PeriodLockStore(Protocol):
    def find_lock(self, period_key: str, project_id: Optional[str]) -> Optional[PeriodLockRecord]:
        """Global lock for the period, or a lock scoped to ``project_id``."""
        ...

    def find_active(self, period_keys: Sequence[str], project_ids: Sequence[str]) -> List[PeriodLockRecord]:
        """All locks for the periods that are global or scoped to one of the projects."""
        ...


class WorklogSettingStore(Protocol):
    def get_editable_days(self) -> Optional[int]:
        """Configured edit window in days; None when unset."""
        ...


class AckLinkStore(Protocol):
    def find_by_target(self, target_table: str, target_id: str) -> List[AckLinkRecord]:
        ...


class AckRequestStore(Protocol):
    def find_by_ids(self, ids: Sequence[str]) -> List[AckRequestRecord]:
        ...


class AckStore(Protocol):
    def find_by_request(self, request_ids: Sequence[str]) -> List[AckRecord]:
        ...


@dataclass
class GuardSources:
    """The state providers guard checks read from."""
    approvals: ApprovalInstanceStore
    projects: ProjectStore
    period_locks: PeriodLockStore
    worklog_settings: WorklogSettingStore
    ack_links: AckLinkStore
    ack_requests: AckRequestStore
    acks: AckStore

    @classmethod
    def single(cls, store) -> "GuardSources":
        """Use one object implementing every interface for all sources."""
        return cls(
            approvals=store,
            projects=store,
            period_locks=store,
            worklog_settings=store,
            ack_links=store,
            ack_requests=store,
            acks=store,
        )
