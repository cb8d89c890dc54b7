"""Turn client conversation history into model turns.

Clients send the history in the UI message format: every message has a
``role`` and either a plain ``content`` string or a list of typed ``parts``
(``text``, ``tool-<name>``, ``reasoning``, ...). Older clients attach tool
calls as a ``toolInvocations`` list instead. The model collaborator expects a
flat list of turns::

    {"role": "user", "content": "..."}
    {"role": "assistant", "content": "...", "tool_calls": [...]}
    {"role": "tool", "tool_call_id": "...", "name": "...", "content": "<json>"}

Conversion is strict and raises :class:`MessageConversionError` on anything
malformed; :class:`ConversationNormalizer` wraps it in a shrinking retry
chain so one broken turn does not end the conversation.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Literal, Sequence

from loguru import logger

from app.utils.exceptions import ConversationNormalizationError

ModelTurn = dict[str, Any]
Stage = Literal["full", "filtered", "minimal"]

TOOL_PART_PREFIX = "tool-"


class MessageConversionError(ValueError):
    """Raised when a history message cannot be turned into model turns."""


def message_text(message: dict[str, Any]) -> str:
    """Return the plain text carried by a UI message."""

    content = message.get("content")
    if isinstance(content, str):
        return content
    parts = message.get("parts")
    if isinstance(parts, list):
        chunks = [
            part.get("text") or ""
            for part in parts
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "".join(chunks)
    if content is not None:
        return json.dumps(content, default=str)
    return ""


def _is_tool_part(part: dict[str, Any]) -> bool:
    part_type = part.get("type")
    return isinstance(part_type, str) and (
        part_type.startswith(TOOL_PART_PREFIX) or part_type == "dynamic-tool"
    )


def _tool_part_name(part: dict[str, Any]) -> str:
    if part.get("type") == "dynamic-tool":
        return str(part.get("toolName") or "")
    return part["type"][len(TOOL_PART_PREFIX):]


def _serialize_output(output: Any) -> str:
    return json.dumps(output, default=str)


def _convert_parts(
    parts: Any, position: int
) -> tuple[list[str], list[dict[str, Any]], list[ModelTurn]]:
    if not isinstance(parts, list):
        raise MessageConversionError(f"Message {position}: parts must be a list")

    texts: list[str] = []
    calls: list[dict[str, Any]] = []
    results: list[ModelTurn] = []
    for part in parts:
        if not isinstance(part, dict):
            raise MessageConversionError(f"Message {position}: part is not an object")
        if part.get("type") == "text":
            texts.append(part.get("text") or "")
            continue
        if not _is_tool_part(part):
            continue

        call_id = part.get("toolCallId")
        if not isinstance(call_id, str) or not call_id:
            raise MessageConversionError(f"Message {position}: tool part without toolCallId")
        if part.get("input") is None:
            raise MessageConversionError(f"Message {position}: tool call {call_id} has no input")

        state = part.get("state")
        if state == "output-available":
            output = part.get("output")
        elif state == "output-error":
            output = {"error": part.get("errorText") or "Tool execution failed"}
        else:
            # Calls that never produced a result are not replayed
            continue

        name = _tool_part_name(part)
        calls.append({"id": call_id, "name": name, "arguments": part["input"]})
        results.append(
            {"role": "tool", "tool_call_id": call_id, "name": name, "content": _serialize_output(output)}
        )
    return texts, calls, results


def _convert_invocations(
    invocations: Any, position: int
) -> tuple[list[dict[str, Any]], list[ModelTurn]]:
    if not isinstance(invocations, list):
        raise MessageConversionError(f"Message {position}: toolInvocations must be a list")

    calls: list[dict[str, Any]] = []
    results: list[ModelTurn] = []
    for invocation in invocations:
        if not isinstance(invocation, dict):
            raise MessageConversionError(f"Message {position}: tool invocation is not an object")
        call_id = invocation.get("toolCallId")
        name = invocation.get("toolName")
        state = invocation.get("state")
        if not isinstance(call_id, str) or not call_id:
            raise MessageConversionError(f"Message {position}: tool invocation without toolCallId")
        if not isinstance(name, str) or not name:
            raise MessageConversionError(f"Message {position}: tool invocation {call_id} without toolName")
        if not isinstance(state, str) or state == "partial-call":
            raise MessageConversionError(f"Message {position}: tool invocation {call_id} is incomplete")
        if state != "result":
            continue
        calls.append({"id": call_id, "name": name, "arguments": invocation.get("args") or {}})
        results.append(
            {
                "role": "tool",
                "tool_call_id": call_id,
                "name": name,
                "content": _serialize_output(invocation.get("result")),
            }
        )
    return calls, results


def _convert_assistant(message: dict[str, Any], position: int) -> list[ModelTurn]:
    texts: list[str] = []
    calls: list[dict[str, Any]] = []
    results: list[ModelTurn] = []

    if "parts" in message:
        texts, calls, results = _convert_parts(message["parts"], position)

    content = message.get("content")
    if isinstance(content, str):
        if not texts:
            texts.append(content)
    elif content is not None and "parts" not in message:
        raise MessageConversionError(f"Message {position}: unsupported assistant content")

    if "toolInvocations" in message:
        legacy_calls, legacy_results = _convert_invocations(message["toolInvocations"], position)
        calls.extend(legacy_calls)
        results.extend(legacy_results)

    text = "".join(texts)
    turns: list[ModelTurn] = []
    if text or calls:
        turn: ModelTurn = {"role": "assistant", "content": text}
        if calls:
            turn["tool_calls"] = calls
        turns.append(turn)
    turns.extend(results)
    return turns


def _convert_user(message: dict[str, Any], position: int, role: str) -> ModelTurn:
    content = message.get("content")
    if isinstance(content, str):
        return {"role": role, "content": content}
    if "parts" in message:
        texts, _, _ = _convert_parts(message["parts"], position)
        return {"role": role, "content": "".join(texts)}
    raise MessageConversionError(f"Message {position}: {role} message has no text content")


def convert_messages(messages: Sequence[Any]) -> list[ModelTurn]:
    """Convert UI messages into model turns, raising on malformed input."""

    turns: list[ModelTurn] = []
    for position, message in enumerate(messages):
        if not isinstance(message, dict):
            raise MessageConversionError(f"Message {position} is not an object")
        role = message.get("role")
        if role in ("user", "system"):
            turns.append(_convert_user(message, position, role))
        elif role == "assistant":
            turns.extend(_convert_assistant(message, position))
        else:
            raise MessageConversionError(f"Message {position} has unsupported role {role!r}")
    return turns


def has_incomplete_invocations(message: Any) -> bool:
    """Return True for assistant messages carrying half-recorded tool calls."""

    if not isinstance(message, dict) or message.get("role") != "assistant":
        return False

    parts = message.get("parts")
    if isinstance(parts, list):
        for part in parts:
            if not isinstance(part, dict) or not _is_tool_part(part):
                continue
            call_id = part.get("toolCallId")
            if not isinstance(call_id, str) or not call_id or part.get("input") is None:
                return True

    invocations = message.get("toolInvocations")
    if isinstance(invocations, list):
        for invocation in invocations:
            if not isinstance(invocation, dict):
                return True
            call_id = invocation.get("toolCallId")
            name = invocation.get("toolName")
            state = invocation.get("state")
            if not isinstance(call_id, str) or not call_id:
                return True
            if not isinstance(name, str) or not name:
                return True
            if not isinstance(state, str) or state == "partial-call":
                return True
    return False


def drop_incomplete_invocations(messages: Sequence[Any]) -> list[Any]:
    return [message for message in messages if not has_incomplete_invocations(message)]


def last_user_message(messages: Sequence[Any]) -> list[Any]:
    for message in reversed(messages):
        if isinstance(message, dict) and message.get("role") == "user":
            return [message]
    return []


@dataclass(slots=True)
class NormalizedConversation:
    """Model turns plus the stage and input that produced them."""

    turns: list[ModelTurn]
    stage: Stage
    source_messages: list[Any]


class ConversationNormalizer:
    """Convert history with a three-stage degrading fallback.

    1. convert everything;
    2. drop assistant messages with incomplete tool calls and retry;
    3. keep only the most recent user message.

    Each stage works on a subset of the previous stage's input, so the chain
    never invents content and always terminates after three attempts.
    """

    def __init__(self, converter: Callable[[Sequence[Any]], list[ModelTurn]] = convert_messages) -> None:
        self.converter = converter

    def normalize(self, messages: Sequence[Any]) -> NormalizedConversation:
        full = list(messages)
        try:
            return NormalizedConversation(self.converter(full), "full", full)
        except Exception as exc:
            logger.warning("Full history conversion failed", error=str(exc), messages=len(full))

        filtered = drop_incomplete_invocations(full)
        try:
            turns = self.converter(filtered)
        except Exception as exc:
            retry_error = exc
            logger.warning(
                "Filtered history conversion failed",
                error=str(exc),
                dropped=len(full) - len(filtered),
            )
        else:
            logger.info("Recovered history by dropping incomplete tool calls", dropped=len(full) - len(filtered))
            return NormalizedConversation(turns, "filtered", filtered)

        minimal = last_user_message(filtered)
        if not minimal:
            logger.error("No user message available for fallback conversion")
            raise ConversationNormalizationError(
                "Message conversion failed - no valid messages",
                {"details": str(retry_error)},
            )
        try:
            turns = self.converter(minimal)
        except Exception as exc:
            logger.error("Final history fallback failed", error=str(exc))
            raise ConversationNormalizationError(
                "Message conversion failed completely",
                {"details": str(retry_error), "fallback": str(exc)},
            ) from exc

        logger.warning("Continuing with only the latest user message", discarded=len(full) - 1)
        return NormalizedConversation(turns, "minimal", minimal)
