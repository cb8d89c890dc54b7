"""API endpoint modules for v1."""

from app.api.v1.endpoints import tutor, vocabulary

__all__ = [
    "tutor",
    "vocabulary",
]
