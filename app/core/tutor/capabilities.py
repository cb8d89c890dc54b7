"""Capabilities exposed to the vocabulary tutor model."""
from __future__ import annotations

import re
from typing import Any, Dict, List

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from app.core.learning_status import is_milestone
from app.core.tutor.registry import CapabilityContext, CapabilityRegistry
from app.db.models.vocabulary import LearnerVocabulary
from app.schemas.capabilities import (
    CelebrateMilestoneInput,
    FetchVocabularyBatchInput,
    MatchingExerciseInput,
    MultipleChoiceInput,
    PronunciationExerciseInput,
    SentenceBuilderInput,
    UpdateProgressInput,
    VocabularyTableInput,
)
from app.services.batch_retrieval import BatchRetrievalEngine
from app.services.progress import ProgressService

FETCH_VOCABULARY_BATCH = "fetchVocabularyBatch"
UPDATE_PROGRESS = "updateProgress"
CELEBRATE_MILESTONE = "celebrateMilestone"

MILESTONE_ERROR = "Milestone celebrations only for levels 3 and 5"

tutor_capabilities = CapabilityRegistry()


def _serialize_item(item: LearnerVocabulary) -> Dict[str, Any]:
    return {
        "term": item.term,
        "word": item.term,
        "translation": item.translation,
        "learning_status": int(item.learning_status or 0),
        "lesson_id": item.lesson_id,
        "test_id": item.test_id,
    }


# ---------------------------------------------------------------------------
# Learner state
# ---------------------------------------------------------------------------

@tutor_capabilities.register(
    FETCH_VOCABULARY_BATCH,
    description=(
        "Load the learner's vocabulary collection, ten words at a time. Use after welcoming "
        "the learner; include conversation_continue to tell them what was loaded."
    ),
    input_model=FetchVocabularyBatchInput,
)
def fetch_vocabulary_batch(payload: FetchVocabularyBatchInput, context: CapabilityContext) -> Dict[str, Any]:
    engine = BatchRetrievalEngine(context.db)
    try:
        batch = engine.fetch_batch(
            learner_id=context.learner_id,
            offset=payload.offset,
            session_id=context.session_id,
        )
    except SQLAlchemyError:
        context.db.rollback()
        logger.exception("Vocabulary batch query failed", learner_id=context.learner_id)
        return {
            "error": "Vocabulary could not be loaded right now",
            "hasWords": False,
            "totalCount": 0,
            "conversation_continue": payload.conversation_continue,
        }

    if not batch.has_items:
        return {
            "hasWords": False,
            "words": [],
            "totalCount": batch.total_count,
            "currentOffset": batch.effective_offset,
            "autoAdvanced": batch.auto_advanced,
            "message": "No vocabulary words found. User should save words from lessons to build their collection.",
            "instructions": (
                "Explain that they need to click on words in lessons to save them. "
                "Suggest exploring courses to build vocabulary."
                if payload.include_context
                else ""
            ),
            "conversation_continue": payload.conversation_continue,
        }

    words = [_serialize_item(item) for item in batch.items]
    if batch.auto_advanced:
        instructions = "Auto-advanced to next batch. Focus on words that need work."
    else:
        instructions = (
            f"Focus on these {len(words)} words that need work. Work systematically through words "
            f"based on learning status. Use {UPDATE_PROGRESS} to track progress silently."
        )
    return {
        "hasWords": True,
        "words": words,
        "totalCount": batch.total_count,
        "currentOffset": batch.effective_offset,
        "batchSize": len(words),
        "wordsNeedingWork": len(words),
        "autoAdvanced": batch.auto_advanced,
        "instructions": instructions if payload.include_context else "",
        "conversation_continue": payload.conversation_continue,
    }


@tutor_capabilities.register(
    UPDATE_PROGRESS,
    description=(
        "Silently update a word's learning status. Use frequently during teaching; "
        "it does not interrupt the chat."
    ),
    input_model=UpdateProgressInput,
)
def update_progress(payload: UpdateProgressInput, context: CapabilityContext) -> Dict[str, Any]:
    result = ProgressService(context.db).apply_status(
        learner_id=context.learner_id, term=payload.term, new_status=payload.new_status
    )
    output: Dict[str, Any] = {
        "term": payload.term,
        "newStatus": payload.new_status,
        "isCorrect": payload.is_correct,
        "updated": result.updated,
        "conversation_continue": payload.conversation_continue,
    }
    if result.error:
        output["reason"] = result.error
    return output


@tutor_capabilities.register(
    CELEBRATE_MILESTONE,
    description=(
        "Show a progress celebration ONLY for meaningful milestones (levels 3 and 5). "
        "Use sparingly for maximum impact."
    ),
    input_model=CelebrateMilestoneInput,
)
def celebrate_milestone(payload: CelebrateMilestoneInput, context: CapabilityContext) -> Dict[str, Any]:
    if not is_milestone(payload.milestone_level):
        logger.warning(
            "Rejected milestone celebration",
            learner_id=context.learner_id,
            term=payload.term,
            level=payload.milestone_level,
        )
        return {"error": MILESTONE_ERROR}

    result = ProgressService(context.db).apply_status(
        learner_id=context.learner_id, term=payload.term, new_status=payload.milestone_level
    )
    return {
        "term": payload.term,
        "previousStatus": payload.previous_status,
        "newStatus": payload.milestone_level,
        "isCorrect": True,
        "isMilestone": True,
        "milestoneLevel": payload.milestone_level,
        "celebrationMessage": payload.message,
        "nextSteps": payload.next_steps,
        "updated": result.updated,
        "conversation_continue": f"{payload.message} {payload.next_steps}",
    }


# ---------------------------------------------------------------------------
# Exercise payloads
# ---------------------------------------------------------------------------

@tutor_capabilities.register(
    "multipleChoice",
    description=(
        "Create a multiple choice question about ONE specific word, e.g. "
        '"Which situation shows geduldig?" with four situations.'
    ),
    input_model=MultipleChoiceInput,
)
def multiple_choice(payload: MultipleChoiceInput, context: CapabilityContext) -> Dict[str, Any]:
    if not payload.options:
        return {"error": "Invalid options array provided to multipleChoice"}
    if not 0 <= payload.correct_index < len(payload.options):
        return {
            "error": (
                f"Invalid correctIndex {payload.correct_index} for options array "
                f"of length {len(payload.options)}"
            )
        }
    return {
        "question": payload.question,
        "options": payload.options,
        "correctIndex": payload.correct_index,
        "correctAnswer": payload.options[payload.correct_index],
        "id": payload.id or "multiple-choice-exercise",
    }


@tutor_capabilities.register(
    "matchingExercise",
    description=(
        "Create a matching exercise ONLY with equal numbers of items on both sides, "
        "e.g. three words and three meanings."
    ),
    input_model=MatchingExerciseInput,
)
def matching_exercise(payload: MatchingExerciseInput, context: CapabilityContext) -> Dict[str, Any]:
    if not payload.left_items or not payload.right_items:
        return {"error": "Both leftItems and rightItems must contain at least one item"}
    if len(payload.left_items) != len(payload.right_items):
        return {
            "error": (
                f"Mismatched array lengths: leftItems has {len(payload.left_items)} items, "
                f"rightItems has {len(payload.right_items)} items"
            )
        }
    if not payload.correct_pairs:
        return {"error": "Invalid correctPairs array provided to matchingExercise"}

    left_ids = {item.id for item in payload.left_items}
    right_ids = {item.id for item in payload.right_items}
    for pair in payload.correct_pairs:
        if pair.left_id not in left_ids:
            return {"error": f'Left ID "{pair.left_id}" not found in leftItems'}
        if pair.right_id not in right_ids:
            return {"error": f'Right ID "{pair.right_id}" not found in rightItems'}

    data = payload.model_dump(by_alias=True)
    data["id"] = payload.id or "matching-exercise"
    return data


_PUNCTUATION = re.compile(r"[.,!?;:]")


def _bare(word: str) -> str:
    return _PUNCTUATION.sub("", word).lower()


def sentence_order(words: List[str], sentence: str) -> List[int]:
    """Return indexes into ``words`` in the order they appear in ``sentence``."""

    order: List[int] = []
    used: set[int] = set()
    for token in sentence.split():
        for index, word in enumerate(words):
            if index not in used and _bare(word) == _bare(token):
                order.append(index)
                used.add(index)
                break
    return order


@tutor_capabilities.register(
    "sentenceBuilder",
    description=(
        "Create a sentence reordering exercise. Always provide target-language sentences only; "
        "use it to practice word order and vocabulary in context."
    ),
    input_model=SentenceBuilderInput,
)
def sentence_builder(payload: SentenceBuilderInput, context: CapabilityContext) -> Dict[str, Any]:
    if not payload.words:
        return {"error": "Invalid words array provided to sentenceBuilder"}
    if not payload.correct_sentence.strip():
        return {"error": "Invalid correctSentence provided to sentenceBuilder"}

    order = sentence_order(payload.words, payload.correct_sentence)
    if len(order) != len(payload.words):
        logger.warning(
            "Sentence builder word mismatch",
            words=len(payload.words),
            matched=len(order),
        )
    return {
        "words": payload.words,
        "correctSentence": payload.correct_sentence,
        "correctOrder": order,
        "hint": payload.hint,
        "translation": payload.translation,
        "id": payload.id or "sentence-builder-exercise",
    }


@tutor_capabilities.register(
    "pronunciationExercise",
    description=(
        "Play a word and let the learner practice pronouncing it. Use when the learner asks "
        "how to pronounce a word."
    ),
    input_model=PronunciationExerciseInput,
)
def pronunciation_exercise(payload: PronunciationExerciseInput, context: CapabilityContext) -> Dict[str, Any]:
    return {"word": payload.word, "explanation": payload.explanation}


@tutor_capabilities.register(
    "table",
    description=(
        "Show a vocabulary overview table. Keep captions natural; avoid technical terms like 'batch'."
    ),
    input_model=VocabularyTableInput,
)
def vocabulary_table(payload: VocabularyTableInput, context: CapabilityContext) -> Dict[str, Any]:
    width = len(payload.headers)
    if any(len(row) != width for row in payload.rows):
        return {"error": f"Every row must have {width} cells to match the headers"}
    return {
        "headers": payload.headers,
        "rows": payload.rows,
        "caption": payload.caption,
        "followUpText": payload.follow_up_text,
    }


__all__ = [
    "CELEBRATE_MILESTONE",
    "FETCH_VOCABULARY_BATCH",
    "MILESTONE_ERROR",
    "UPDATE_PROGRESS",
    "sentence_order",
    "tutor_capabilities",
]
