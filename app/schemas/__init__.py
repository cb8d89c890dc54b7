"""Pydantic schemas package."""

from app.schemas.tutor import (
    SaveMessageRequest,
    SaveMessageResponse,
    TutorChatRequest,
    TutorHistoryResponse,
    TutorMessageRead,
    parse_chat_request,
)
from app.schemas.vocabulary import (
    StatusUpdateRequest,
    StatusUpdateResponse,
    VocabularyBacklogResponse,
    VocabularyItemRead,
    VocabularyProgressSummary,
)

__all__ = [
    "SaveMessageRequest",
    "SaveMessageResponse",
    "TutorChatRequest",
    "TutorHistoryResponse",
    "TutorMessageRead",
    "parse_chat_request",
    "StatusUpdateRequest",
    "StatusUpdateResponse",
    "VocabularyBacklogResponse",
    "VocabularyItemRead",
    "VocabularyProgressSummary",
]
