"""Approval workflow database models.

Stores approval rules, the instances created from them and the approver
slots of every stage.
"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from erpflow.db.base import Base, new_id, utcnow


class ApprovalRule(Base):
    """
    Selects the approver ladder for submissions of one flow type.

    ``steps`` holds either a legacy flat list or a staged definition;
    ``conditions`` holds the RuleCondition JSON.
    """
    __tablename__ = "approval_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_type = Column(String(50), nullable=False, index=True)
    conditions = Column(JSON, nullable=False, default=dict)
    steps = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.flow_type} [{self.id}]>"


class ApprovalInstance(Base):
    """Approval workflow for one target record."""
    __tablename__ = "approval_instances"

    id = Column(String(36), primary_key=True, default=new_id)
    flow_type = Column(String(50), nullable=False)
    target_table = Column(String(100), nullable=False)
    target_id = Column(String(36), nullable=False)
    rule_id = Column(String(36), ForeignKey("approval_rules.id", ondelete="SET NULL"), nullable=True)

    status = Column(String(30), nullable=False, index=True)
    current_step = Column(Integer, nullable=True)
    stage_policy = Column(JSON, nullable=False, default=dict)

    # Submitted document payload (amount, projectId, ...)
    payload = Column(JSON, nullable=False, default=dict)

    requested_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rule = relationship("ApprovalRule")
    steps = relationship(
        "ApprovalStep",
        back_populates="instance",
        order_by="ApprovalStep.step_order",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_approval_instances_target", "flow_type", "target_table", "target_id"),
    )

    def __repr__(self) -> str:
        return f"<ApprovalInstance {self.target_table}/{self.target_id} [{self.status}]>"


class ApprovalStep(Base):
    """One approver slot of an approval instance."""
    __tablename__ = "approval_steps"

    id = Column(String(36), primary_key=True, default=new_id)
    instance_id = Column(String(36), ForeignKey("approval_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    step_order = Column(Integer, nullable=False)

    # Exactly one of the two is set
    approver_group_id = Column(String(100), nullable=True)
    approver_user_id = Column(String(36), nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    acted_by = Column(String(36), nullable=True)
    acted_at = Column(DateTime, nullable=True)
    comment = Column(Text, nullable=True)

    instance = relationship("ApprovalInstance", back_populates="steps")

    def __repr__(self) -> str:
        approver = self.approver_group_id or self.approver_user_id
        return f"<ApprovalStep #{self.step_order} {approver} [{self.status}]>"
