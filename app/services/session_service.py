"""Service layer for durable tutor conversation sessions."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.tutor.normalizer import message_text
from app.db.models.session import TutorMessage, TutorSession


class TutorSessionService:
    """Create, resume and annotate tutor sessions keyed by chat and learner."""

    def __init__(self, db: Session, *, task_type: str | None = None) -> None:
        self.db = db
        self.task_type = task_type or settings.TUTOR_TASK_TYPE

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def get_session(self, *, external_chat_id: str, learner_id: str) -> TutorSession | None:
        stmt = select(TutorSession).where(
            TutorSession.external_chat_id == external_chat_id,
            TutorSession.learner_id == learner_id,
        )
        return self.db.scalars(stmt).first()

    def resume_or_create(self, *, external_chat_id: str, learner_id: str) -> TutorSession:
        """Return the session for ``(external_chat_id, learner_id)``.

        An existing session has its ``last_activity_at`` touched; a missing
        one is created with the cursor at zero. Store errors propagate so the
        caller can decide to continue without persistence.
        """

        now = datetime.now(timezone.utc)
        session = self.get_session(external_chat_id=external_chat_id, learner_id=learner_id)
        if session is not None:
            session.last_activity_at = now
            session.task_type = self.task_type
            self.db.commit()
            logger.debug("Resumed tutor session", session_id=str(session.id), learner_id=learner_id)
            return session

        session = TutorSession(
            external_chat_id=external_chat_id,
            learner_id=learner_id,
            task_type=self.task_type,
            current_offset=0,
            last_activity_at=now,
        )
        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created the same session first
            self.db.rollback()
            existing = self.get_session(external_chat_id=external_chat_id, learner_id=learner_id)
            if existing is None:
                raise
            logger.info("Tutor session created concurrently", session_id=str(existing.id))
            return existing

        logger.info(
            "Created tutor session",
            session_id=str(session.id),
            learner_id=learner_id,
            chat_id=external_chat_id,
        )
        return session

    def update_cursor(self, session_id: UUID, offset: int) -> bool:
        """Persist the backlog cursor; return False when the write failed."""

        stmt = (
            update(TutorSession)
            .where(TutorSession.id == session_id)
            .values(current_offset=offset)
            .execution_options(synchronize_session="fetch")
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to persist session cursor", session_id=str(session_id), offset=offset)
            return False
        logger.debug("Session cursor persisted", session_id=str(session_id), offset=offset)
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def _next_index(self, session_id: UUID) -> int:
        stmt = select(func.max(TutorMessage.message_index)).where(TutorMessage.session_id == session_id)
        current = self.db.scalar(stmt)
        return 0 if current is None else int(current) + 1

    def append_message(
        self,
        session_id: UUID,
        *,
        role: str,
        content: dict[str, Any],
        message_index: int | None = None,
    ) -> TutorMessage:
        """Store a message; the index defaults to the next free ordinal."""

        index = self._next_index(session_id) if message_index is None else message_index
        message = TutorMessage(
            session_id=session_id,
            role=role,
            content=content,
            message_index=index,
        )
        self.db.add(message)
        self.db.commit()
        return message

    def record_user_turn(self, session_id: UUID, messages: Sequence[Any]) -> TutorMessage | None:
        """Persist the newest inbound message when it is a user turn.

        Best-effort: the audit trail is not on the critical path, so failures
        are logged and ``None`` is returned.
        """

        if not messages:
            return None
        last = messages[-1]
        if not isinstance(last, dict) or last.get("role") != "user":
            return None
        try:
            return self.append_message(session_id, role="user", content={"text": message_text(last)})
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to store user message", session_id=str(session_id))
            return None

    def list_messages(self, session_id: UUID, *, limit: int) -> list[TutorMessage]:
        stmt = (
            select(TutorMessage)
            .where(TutorMessage.session_id == session_id)
            .order_by(TutorMessage.message_index.asc(), TutorMessage.created_at.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))
