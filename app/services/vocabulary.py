"""Query layer over the learner vocabulary backlog."""
from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.learning_status import LearningStatus
from app.db.models.vocabulary import LearnerVocabulary


class VocabularyNotFoundError(ValueError):
    """Raised when a vocabulary item cannot be located."""


class VocabularyService:
    """Provide querying utilities for a learner's saved vocabulary."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _unmastered(learner_id: str):
        return (
            LearnerVocabulary.learner_id == learner_id,
            LearnerVocabulary.learning_status < int(LearningStatus.MASTERED),
        )

    def list_backlog(self, *, learner_id: str, offset: int, limit: int) -> list[LearnerVocabulary]:
        """Return a page of unmastered items, weakest and oldest first."""

        stmt = (
            select(LearnerVocabulary)
            .where(*self._unmastered(learner_id))
            .order_by(
                LearnerVocabulary.learning_status.asc(),
                LearnerVocabulary.created_at.asc(),
                LearnerVocabulary.id.asc(),
            )
            .offset(offset)
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def count_backlog(self, *, learner_id: str) -> int:
        """Return the number of unmastered items for the learner."""

        stmt = select(func.count()).select_from(LearnerVocabulary).where(*self._unmastered(learner_id))
        return int(self.db.scalar(stmt) or 0)

    def status_breakdown(self, *, learner_id: str) -> dict[int, int]:
        """Return ``{status: count}`` for every status, zero-filled."""

        stmt = (
            select(LearnerVocabulary.learning_status, func.count())
            .where(LearnerVocabulary.learner_id == learner_id)
            .group_by(LearnerVocabulary.learning_status)
        )
        counts = {int(status): 0 for status in LearningStatus}
        for status, count in self.db.execute(stmt):
            counts[int(status)] = int(count)
        return counts

    def get_item(self, *, item_id: int, learner_id: str) -> LearnerVocabulary:
        """Retrieve one of the learner's items by identifier."""

        stmt = select(LearnerVocabulary).where(
            LearnerVocabulary.id == item_id,
            LearnerVocabulary.learner_id == learner_id,
        )
        item = self.db.scalars(stmt).first()
        if item is None:
            raise VocabularyNotFoundError("Vocabulary record not found or access denied")
        return item

    def find_term(self, *, learner_id: str, term: str) -> LearnerVocabulary | None:
        """Return the learner's item matching ``term`` case-insensitively."""

        value = term.strip().lower()
        if not value:
            return None
        stmt = select(LearnerVocabulary).where(
            LearnerVocabulary.learner_id == learner_id,
            func.lower(LearnerVocabulary.term) == value,
        )
        return self.db.scalars(stmt.limit(1)).first()

    def set_status_for_term(self, *, learner_id: str, term: str, status: int) -> int:
        """Write ``status`` to every item matching ``term``; return rows matched.

        Issued as a single UPDATE so concurrent writers never interleave a
        read and a write in application code. The caller owns the commit.
        """

        value = term.strip().lower()
        if not value:
            return 0
        stmt = (
            update(LearnerVocabulary)
            .where(
                LearnerVocabulary.learner_id == learner_id,
                func.lower(LearnerVocabulary.term) == value,
            )
            .values(learning_status=int(status), updated_at=func.now())
            .execution_options(synchronize_session="fetch")
        )
        result = self.db.execute(stmt)
        return int(result.rowcount or 0)
