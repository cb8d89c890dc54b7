"""Utility helpers package."""

from app.utils.exceptions import (
    ConversationalLearningException,
    ConversationNormalizationError,
    RequestEnvelopeError,
)

__all__ = [
    "ConversationalLearningException",
    "ConversationNormalizationError",
    "RequestEnvelopeError",
]
