"""Service layer package."""

from app.services.batch_retrieval import BatchRetrievalEngine, VocabularyBatch
from app.services.llm_service import LLMService
from app.services.progress import ProgressService
from app.services.session_service import TutorSessionService
from app.services.vocabulary import VocabularyService

__all__ = [
    "BatchRetrievalEngine",
    "LLMService",
    "ProgressService",
    "TutorSessionService",
    "VocabularyBatch",
    "VocabularyService",
]
