"""Paged, self-correcting retrieval over a learner's vocabulary backlog."""
from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from app.config import settings
from app.db.models.vocabulary import LearnerVocabulary
from app.services.session_service import TutorSessionService
from app.services.vocabulary import VocabularyService


@dataclass(slots=True)
class VocabularyBatch:
    """One served page of the backlog."""

    items: list[LearnerVocabulary]
    total_count: int
    requested_offset: int
    effective_offset: int
    auto_advanced: bool = False
    cursor_persisted: bool | None = None
    batch_size: int = field(default=10)

    @property
    def has_items(self) -> bool:
        return bool(self.items)


class BatchRetrievalEngine:
    """Serve fixed-size backlog pages and skip one dead page when needed.

    When the requested page comes back empty while the count says more
    unmastered items exist further on (items were mastered between calls),
    the engine advances exactly one page and serves that instead. It never
    advances twice within a call.
    """

    def __init__(
        self,
        db: Session,
        *,
        vocabulary: VocabularyService | None = None,
        sessions: TutorSessionService | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.db = db
        self.vocabulary = vocabulary or VocabularyService(db)
        self.sessions = sessions or TutorSessionService(db)
        self.batch_size = batch_size or settings.TUTOR_BATCH_SIZE

    def fetch_batch(
        self, *, learner_id: str, offset: int = 0, session_id: UUID | None = None
    ) -> VocabularyBatch:
        offset = max(0, int(offset))
        items = self.vocabulary.list_backlog(learner_id=learner_id, offset=offset, limit=self.batch_size)
        total = self.vocabulary.count_backlog(learner_id=learner_id)

        batch = VocabularyBatch(
            items=items,
            total_count=total,
            requested_offset=offset,
            effective_offset=offset,
            batch_size=self.batch_size,
        )

        if not items and offset + self.batch_size < total:
            advanced = offset + self.batch_size
            batch.items = self.vocabulary.list_backlog(
                learner_id=learner_id, offset=advanced, limit=self.batch_size
            )
            batch.effective_offset = advanced
            batch.auto_advanced = True
            logger.info(
                "Auto-advanced vocabulary batch",
                learner_id=learner_id,
                requested_offset=offset,
                offset=advanced,
                total=total,
            )

        if session_id is not None:
            batch.cursor_persisted = self.sessions.update_cursor(session_id, batch.effective_offset)

        logger.debug(
            "Vocabulary batch served",
            learner_id=learner_id,
            offset=batch.effective_offset,
            size=len(batch.items),
            total=total,
        )
        return batch
