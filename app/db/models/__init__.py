"""Database models package."""
from app.db.models.vocabulary import LearnerVocabulary
from app.db.models.session import TutorMessage, TutorSession

__all__ = [
    "LearnerVocabulary",
    "TutorMessage",
    "TutorSession",
]
