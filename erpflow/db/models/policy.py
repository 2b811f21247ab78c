"""Action policy model.

Rows are read by ``erpflow.db.stores.SqlPolicyStore`` and converted to
``erpflow.core.policy.definitions.ActionPolicy``. JSON columns keep the
camelCase shape the policy editor writes.
"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, Index

from erpflow.db.base import Base, new_id, utcnow


class ActionPolicy(Base):
    """A configured authorization rule for one (flow_type, action_key)."""
    __tablename__ = "action_policies"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_type = Column(String(50), nullable=False)
    action_key = Column(String(100), nullable=False)

    priority = Column(Integer, nullable=False, default=0)
    is_enabled = Column(Boolean, nullable=False, default=True)

    subjects = Column(JSON, nullable=True)            # {roles, groupIds, userIds}
    state_constraints = Column(JSON, nullable=True)   # {statusIn, statusNotIn}
    guards = Column(JSON, nullable=True)              # kept as authored
    require_reason = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_action_policies_flow_action", "flow_type", "action_key"),
    )

    def __repr__(self) -> str:
        return f"<ActionPolicy {self.flow_type}:{self.action_key} p={self.priority}>"
