"""Tutor session and conversation database models."""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.types import JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.db.base import Base


class TutorSession(Base):
    """One ongoing tutoring conversation between a learner and the tutor."""

    __tablename__ = "tutor_sessions"
    __table_args__ = (
        UniqueConstraint("external_chat_id", "learner_id", name="uq_tutor_sessions_chat_learner"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_chat_id = Column(String(255), nullable=False)
    learner_id = Column(String(255), nullable=False, index=True)
    task_type = Column(String(50), nullable=False)

    # Cursor into the learner's vocabulary backlog
    current_offset = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_activity_at = Column(DateTime(timezone=True), server_default=func.now())

    messages = relationship(
        "TutorMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="TutorMessage.message_index",
    )


class TutorMessage(Base):
    """A persisted conversation turn kept for audit and replay."""

    __tablename__ = "tutor_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        UUID(as_uuid=True), ForeignKey("tutor_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    role = Column(String(20), nullable=False)
    content = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=dict)
    message_index = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    session = relationship("TutorSession", back_populates="messages")
