"""Pydantic schemas for learner vocabulary endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class VocabularyItemRead(BaseModel):
    """Representation of one saved vocabulary item."""

    id: int
    term: str
    translation: Optional[str] = None
    learning_status: int = Field(ge=0, le=5)
    lesson_id: Optional[str] = None
    test_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VocabularyBacklogResponse(BaseModel):
    """Page of the learner's unmastered backlog."""

    total: int
    offset: int
    limit: int
    items: list[VocabularyItemRead]


class VocabularyProgressSummary(BaseModel):
    """Item counts per learning status."""

    learner_id: str
    total: int
    mastered: int
    by_status: Dict[int, int]


class StatusUpdateRequest(BaseModel):
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "user_id"))
    new_status: int = Field(ge=0, le=5, validation_alias=AliasChoices("newStatus", "new_status"))


class StatusUpdateResponse(BaseModel):
    id: int
    term: str
    previous_status: int
    new_status: int


__all__: List[str] = [
    "StatusUpdateRequest",
    "StatusUpdateResponse",
    "VocabularyBacklogResponse",
    "VocabularyItemRead",
    "VocabularyProgressSummary",
]
