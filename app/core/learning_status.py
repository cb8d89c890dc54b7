"""Learning status values and the rules the tutor applies to them."""
from __future__ import annotations

from enum import IntEnum


class LearningStatus(IntEnum):
    """Six-step mastery scale for one vocabulary item."""

    NOT_STARTED = 0
    INTRODUCED = 1
    PARTIALLY_LEARNED = 2
    SECOND_CHANCE = 3
    REVIEWING = 4
    MASTERED = 5


MILESTONE_STATUSES = frozenset({LearningStatus.SECOND_CHANCE, LearningStatus.MASTERED})


class InvalidLearningStatus(ValueError):
    """Raised when a value falls outside the learning status scale."""


def coerce_status(value: object) -> LearningStatus:
    """Return ``value`` as a :class:`LearningStatus` or raise.

    Booleans and non-integral floats are rejected even though Python would
    happily treat them as integers.
    """

    if isinstance(value, bool):
        raise InvalidLearningStatus(f"Invalid learning status {value!r}. Must be 0-5")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidLearningStatus(f"Invalid learning status {value!r}. Must be 0-5")
        value = int(value)
    try:
        return LearningStatus(value)
    except (ValueError, TypeError) as exc:
        raise InvalidLearningStatus(f"Invalid learning status {value!r}. Must be 0-5") from exc


def is_milestone(status: int) -> bool:
    """Return True when reaching ``status`` deserves a celebration."""

    return status in MILESTONE_STATUSES


__all__ = [
    "InvalidLearningStatus",
    "LearningStatus",
    "MILESTONE_STATUSES",
    "coerce_status",
    "is_milestone",
]
