"""Database models for erpflow."""

from erpflow.db.models.policy import ActionPolicy
from erpflow.db.models.approval import ApprovalRule, ApprovalInstance, ApprovalStep
from erpflow.db.models.project import Project, PeriodLock, WorklogSetting
from erpflow.db.models.chat import ChatMessage, ChatAckRequest, ChatAck, ChatAckLink
from erpflow.db.models.audit import AuditLog

__all__ = [
    "ActionPolicy",
    "ApprovalRule",
    "ApprovalInstance",
    "ApprovalStep",
    "Project",
    "PeriodLock",
    "WorklogSetting",
    "ChatMessage",
    "ChatAckRequest",
    "ChatAck",
    "ChatAckLink",
    "AuditLog",
]
