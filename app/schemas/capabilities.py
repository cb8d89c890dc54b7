"""Input contracts for the capabilities the tutor model may invoke."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CapabilityInput(BaseModel):
    """Base class: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FetchVocabularyBatchInput(CapabilityInput):
    offset: int = Field(
        0,
        ge=0,
        description="Starting position for loading words (0 for the first batch, 10 for the second, ...)",
    )
    include_context: bool = Field(
        True,
        alias="includeContext",
        description="Whether to include learning context and instructions",
    )
    conversation_continue: str = Field(
        "",
        description=(
            "Enthusiastic teacher message taking charge of the lesson. Be proactive and decide "
            "the learning approach instead of asking what the learner wants."
        ),
    )


class UpdateProgressInput(CapabilityInput):
    term: str = Field(..., min_length=1, description="The vocabulary word to update")
    new_status: int = Field(
        ...,
        alias="newStatus",
        ge=0,
        le=5,
        description=(
            "New learning status: 0=not_started, 1=introduced, 2=partially_learned, "
            "3=second_chance, 4=reviewing, 5=mastered"
        ),
    )
    is_correct: bool = Field(
        False, alias="isCorrect", description="Whether the learner answered correctly this time"
    )
    conversation_continue: str = Field(
        "",
        description="Message continuing the conversation without mentioning the progress update",
    )


class CelebrateMilestoneInput(CapabilityInput):
    term: str = Field(..., min_length=1, description="The vocabulary word that reached the milestone")
    milestone_level: int = Field(
        ..., alias="milestoneLevel", ge=3, le=5, description="Milestone level reached (3 or 5 only)"
    )
    previous_status: int = Field(
        ..., alias="previousStatus", ge=0, le=4, description="Previous learning status"
    )
    message: str = Field(..., description="Congratulatory message explaining the achievement")
    next_steps: str = Field(
        ..., alias="nextSteps", description="What happens next in the learner's journey"
    )


class MultipleChoiceInput(CapabilityInput):
    question: str = Field(..., description="Vocabulary question with context")
    options: List[str] = Field(..., description="Answers with realistic distractors")
    correct_index: int = Field(..., alias="correctIndex", description="Index of the correct answer")
    id: Optional[str] = Field(None, description="Optional unique identifier for this exercise")


class MatchingItem(CapabilityInput):
    id: str = Field(..., description="Unique identifier for this item")
    text: str


class MatchingPair(CapabilityInput):
    left_id: str = Field(..., alias="leftId")
    right_id: str = Field(..., alias="rightId")


class MatchingExerciseInput(CapabilityInput):
    instructions: str
    left_items: List[MatchingItem] = Field(..., alias="leftItems", description="Target-language words")
    right_items: List[MatchingItem] = Field(..., alias="rightItems", description="Meanings")
    correct_pairs: List[MatchingPair] = Field(..., alias="correctPairs")
    id: Optional[str] = None


class SentenceBuilderInput(CapabilityInput):
    words: List[str] = Field(..., description="Target-language words to arrange into a sentence")
    correct_sentence: str = Field(..., alias="correctSentence")
    hint: Optional[str] = None
    translation: Optional[str] = None
    id: Optional[str] = None


class PronunciationExerciseInput(CapabilityInput):
    word: str = Field(..., min_length=1, description="The word to pronounce and practice")
    explanation: Optional[str] = Field(None, description="Pronunciation tips or challenging sounds")


class VocabularyTableInput(CapabilityInput):
    headers: List[str] = Field(..., description='Column headers, e.g. ["German", "English"]')
    rows: List[List[str]] = Field(..., description="Data rows with vocabulary information")
    caption: Optional[str] = None
    follow_up_text: Optional[str] = Field(None, alias="followUpText")
