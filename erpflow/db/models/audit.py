"""Audit log model for erpflow.

Entries are append-only: overrides of action policies and every action on
an approval instance are recorded here.
"""

from sqlalchemy import Column, String, DateTime, JSON, Text

from erpflow.db.base import Base, new_id, utcnow


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)

    # Actor
    user_id = Column(String(36), nullable=True, index=True)

    # Action details
    action = Column(String(100), nullable=False, index=True)
    target_table = Column(String(100), nullable=True)
    target_id = Column(String(36), nullable=True, index=True)
    reason_text = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.target_table}/{self.target_id}>"
