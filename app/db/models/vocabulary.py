"""Learner vocabulary database models."""
from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from app.db.base import Base


class LearnerVocabulary(Base):
    """A word saved into one learner's personal backlog."""

    __tablename__ = "learner_vocabulary"
    __table_args__ = (
        CheckConstraint(
            "learning_status >= 0 AND learning_status <= 5",
            name="ck_learner_vocabulary_learning_status",
        ),
        Index("ix_learner_vocabulary_backlog", "learner_id", "learning_status", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    learner_id = Column(String(255), nullable=False, index=True)
    term = Column(String(255), nullable=False)
    translation = Column(Text, nullable=True)
    learning_status = Column(Integer, nullable=False, default=0, server_default="0")

    # Provenance: the lesson or test the learner saved the word from
    lesson_id = Column(String(255), nullable=True)
    test_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<LearnerVocabulary term={self.term!r} status={self.learning_status!r}>"
