"""Business logic for learner vocabulary progress."""
from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.learning_status import InvalidLearningStatus, LearningStatus, coerce_status
from app.services.vocabulary import VocabularyNotFoundError, VocabularyService
from app.utils.exceptions import ProgressError


@dataclass(slots=True)
class ProgressUpdate:
    """Outcome of a requested learning status change."""

    term: str
    status: int | None
    updated: bool
    matched: int = 0
    error: str | None = None


@dataclass(slots=True)
class ItemStatusChange:
    """Previous and new status of a single vocabulary record."""

    item_id: int
    term: str
    previous_status: int
    new_status: int


class ProgressService:
    """Apply learning status transitions requested by the tutor."""

    def __init__(self, db: Session, *, vocabulary: VocabularyService | None = None) -> None:
        self.db = db
        self.vocabulary = vocabulary or VocabularyService(db)

    def apply_status(self, *, learner_id: str, term: str, new_status: object) -> ProgressUpdate:
        """Persist ``new_status`` for the learner's ``term``.

        Never raises: validation and store failures are reported through the
        returned :class:`ProgressUpdate` so a failed write cannot interrupt
        the conversation.
        """

        try:
            status = coerce_status(new_status)
        except InvalidLearningStatus as exc:
            logger.warning("Rejected learning status", learner_id=learner_id, term=term, status=new_status)
            return ProgressUpdate(term=term, status=None, updated=False, error=str(exc))

        try:
            matched = self.vocabulary.set_status_for_term(
                learner_id=learner_id, term=term, status=status
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Failed to update word progress", learner_id=learner_id, term=term)
            return ProgressUpdate(
                term=term, status=int(status), updated=False, error=f"Progress not saved: {exc}"
            )

        if matched == 0:
            logger.warning("No vocabulary item matched progress update", learner_id=learner_id, term=term)
            return ProgressUpdate(
                term=term,
                status=int(status),
                updated=False,
                matched=0,
                error=f"'{term}' is not in the learner's vocabulary",
            )

        logger.debug(
            "Word progress updated",
            learner_id=learner_id,
            term=term,
            status=int(status),
            matched=matched,
        )
        return ProgressUpdate(term=term, status=int(status), updated=True, matched=matched)

    def update_item_status(
        self, *, item_id: int, learner_id: str, new_status: LearningStatus
    ) -> ItemStatusChange:
        """Set the status of one record owned by the learner."""

        try:
            item = self.vocabulary.get_item(item_id=item_id, learner_id=learner_id)
        except VocabularyNotFoundError as exc:
            raise ProgressError(str(exc), {"item_id": item_id}) from exc

        previous = int(item.learning_status)
        item.learning_status = int(new_status)
        self.db.commit()
        logger.info(
            "Vocabulary status changed",
            item_id=item_id,
            learner_id=learner_id,
            previous=previous,
            status=int(new_status),
        )
        return ItemStatusChange(
            item_id=item.id,
            term=item.term,
            previous_status=previous,
            new_status=int(new_status),
        )
