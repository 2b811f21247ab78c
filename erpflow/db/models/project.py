"""Project, period lock and worklog setting models read by guards."""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from erpflow.db.base import Base, new_id, utcnow


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True)  # active, closed
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Project {self.name} [{self.status}]>"


class PeriodLock(Base):
    """
    Accounting period lock.

    A ``global`` lock closes the month for everyone; a ``project`` lock
    closes it for one project only.
    """
    __tablename__ = "period_locks"

    id = Column(String(36), primary_key=True, default=new_id)
    period_key = Column(String(7), nullable=False, index=True)  # YYYY-MM
    scope = Column(String(20), nullable=False, default="global")
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    reason = Column(Text, nullable=True)
    closed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    project = relationship("Project")

    def __repr__(self) -> str:
        return f"<PeriodLock {self.period_key} {self.scope}>"


class WorklogSetting(Base):
    __tablename__ = "worklog_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    editable_days = Column(Integer, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
