"""Chat acknowledgement models.

An acknowledgement request asks a fixed set of users to confirm a chat
message; links attach the request to records (approval instances) whose
actions are guarded by ``chat_ack_completed``.
"""

from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Text, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from erpflow.db.base import Base, new_id, utcnow


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=new_id)
    room_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True)
    body = Column(Text, nullable=False, default="")
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ChatAckRequest(Base):
    __tablename__ = "chat_ack_requests"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    required_user_ids = Column(JSON, nullable=False, default=list)
    due_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    message = relationship("ChatMessage")
    acks = relationship("ChatAck", back_populates="request", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<ChatAckRequest {self.id} for {self.message_id}>"


class ChatAck(Base):
    __tablename__ = "chat_acks"

    id = Column(String(36), primary_key=True, default=new_id)
    request_id = Column(String(36), ForeignKey("chat_ack_requests.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    acked_at = Column(DateTime, default=utcnow)

    request = relationship("ChatAckRequest", back_populates="acks")

    __table_args__ = (
        UniqueConstraint("request_id", "user_id", name="uq_chat_acks_request_user"),
    )


class ChatAckLink(Base):
    __tablename__ = "chat_ack_links"

    id = Column(String(36), primary_key=True, default=new_id)
    ack_request_id = Column(String(36), ForeignKey("chat_ack_requests.id", ondelete="CASCADE"), nullable=False)
    target_table = Column(String(100), nullable=False)
    target_id = Column(String(36), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_chat_ack_links_target", "target_table", "target_id"),
    )
