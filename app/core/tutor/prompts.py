"""Prompt templates that guide the vocabulary tutor."""
from __future__ import annotations

from dataclasses import dataclass
from textwrap import dedent
from typing import Any, Sequence

from loguru import logger

from app.core.tutor.capabilities import CELEBRATE_MILESTONE, FETCH_VOCABULARY_BATCH, UPDATE_PROGRESS
from app.core.tutor.normalizer import message_text

INITIALIZATION_MARKERS = (
    "I'm ready to help you practice",
    "ready to help",
    "ready to practice",
)


def is_initialization_message(messages: Sequence[Any]) -> bool:
    """Return True when the history is the client's opening handshake."""

    if len(messages) != 1:
        return False
    message = messages[0]
    if not isinstance(message, dict) or message.get("role") != "user":
        return False
    if not isinstance(message.get("content"), str):
        return False
    text = message_text(message)
    return text == "hello" or any(marker in text for marker in INITIALIZATION_MARKERS)


@dataclass(frozen=True)
class TutorPersona:
    """Descriptor for the tutor persona and teaching language."""

    name: str
    target_language: str
    audience: str
    goals: Sequence[str]


LUNA = TutorPersona(
    name="Luna",
    target_language="German",
    audience="A1 learners working through their personal vocabulary collection",
    goals=(
        "Teach through natural conversation and cultural stories, not mechanical drills",
        "Use about 90% English and 10% German; German only for the word being taught and short examples",
        "Keep responses short and always end with a question to keep the conversation flowing",
        "Use exercise tools only when they genuinely help understanding",
    ),
)


def _workflow_section(is_initialization: bool) -> str:
    if is_initialization:
        return dedent(
            f"""
            THIS IS AN INITIALIZATION MESSAGE - the learner is just starting their practice session.
            1. Greet them warmly and explain this is their personal vocabulary collection.
            2. Ask about their vocabulary learning experience or goals.
            3. Then call {FETCH_VOCABULARY_BATCH} to load only the words that still need work.
            4. Begin teaching the loaded words.
            """
        )
    return dedent(
        """
        THIS IS A CONTINUED CONVERSATION - respond naturally to the learner's message and
        continue the vocabulary practice.
        """
    )


def build_tutor_system_prompt(*, is_initialization: bool, persona: TutorPersona = LUNA) -> str:
    """Render the tutor system prompt."""

    goals = "\n".join(f"- {goal}" for goal in persona.goals)
    tools = dedent(
        f"""
        Tools:
        - {FETCH_VOCABULARY_BATCH}: load the learner's words ten at a time (offset 0, 10, 20, ...).
        - {UPDATE_PROGRESS}: silent progress tracking after genuine learning moments.
        - {CELEBRATE_MILESTONE}: celebrate ONLY when a word reaches level 3 or 5.
        - multipleChoice, matchingExercise, sentenceBuilder, pronunciationExercise, table: exercises.
        Every tool result carries conversation_continue; build your next message on it.
        """
    ).strip()
    prompt = "\n\n".join(
        [
            f"You are {persona.name}, a {persona.target_language} vocabulary coach for {persona.audience}.",
            f"Objectives:\n{goals}",
            tools,
            _workflow_section(is_initialization).strip(),
        ]
    )
    logger.debug("Built tutor system prompt", persona=persona.name, initialization=is_initialization)
    return prompt
