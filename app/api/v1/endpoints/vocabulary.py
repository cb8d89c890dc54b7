"""Learner vocabulary endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api import deps
from app.core.learning_status import LearningStatus
from app.schemas import (
    StatusUpdateRequest,
    StatusUpdateResponse,
    VocabularyBacklogResponse,
    VocabularyItemRead,
    VocabularyProgressSummary,
)
from app.services.progress import ProgressService
from app.services.vocabulary import VocabularyService
from app.utils.exceptions import ProgressError, handle_progress_error

router = APIRouter(prefix="/vocabulary", tags=["vocabulary"])


@router.get("/backlog", response_model=VocabularyBacklogResponse)
def list_backlog(
    user_id: str = Query(..., alias="userId", min_length=1),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(deps.get_db),
) -> VocabularyBacklogResponse:
    """Return a page of the learner's unmastered words."""

    service = VocabularyService(db)
    items = service.list_backlog(learner_id=user_id, offset=offset, limit=limit)
    total = service.count_backlog(learner_id=user_id)
    return VocabularyBacklogResponse(
        total=total,
        offset=offset,
        limit=limit,
        items=[VocabularyItemRead.model_validate(item) for item in items],
    )


@router.get("/progress", response_model=VocabularyProgressSummary)
def get_progress_summary(
    user_id: str = Query(..., alias="userId", min_length=1),
    db: Session = Depends(deps.get_db),
) -> VocabularyProgressSummary:
    """Count the learner's words per learning status."""

    breakdown = VocabularyService(db).status_breakdown(learner_id=user_id)
    return VocabularyProgressSummary(
        learner_id=user_id,
        total=sum(breakdown.values()),
        mastered=breakdown[int(LearningStatus.MASTERED)],
        by_status=breakdown,
    )


@router.patch("/{item_id}/status", response_model=StatusUpdateResponse)
def update_item_status(
    item_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(deps.get_db),
) -> StatusUpdateResponse:
    """Set the learning status of one of the learner's words."""

    try:
        change = ProgressService(db).update_item_status(
            item_id=item_id,
            learner_id=payload.user_id,
            new_status=LearningStatus(payload.new_status),
        )
    except ProgressError as exc:
        raise handle_progress_error(exc) from exc
    return StatusUpdateResponse(
        id=change.item_id,
        term=change.term,
        previous_status=change.previous_status,
        new_status=change.new_status,
    )
