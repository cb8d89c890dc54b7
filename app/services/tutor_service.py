"""Request lifecycle of one vocabulary tutor turn."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.core.tutor.capabilities import tutor_capabilities
from app.core.tutor.normalizer import ConversationNormalizer, NormalizedConversation
from app.core.tutor.prompts import build_tutor_system_prompt, is_initialization_message
from app.core.tutor.registry import CapabilityContext, CapabilityInvocation, CapabilityRegistry
from app.schemas.tutor import TutorChatRequest
from app.services.llm_service import (
    LLMProviderError,
    LLMService,
    StreamFinished,
    TextDelta,
    ToolCallRequest,
)
from app.services.session_service import TutorSessionService

SSE_DONE = "data: [DONE]\n\n"


def sse_event(payload: Dict[str, Any]) -> str:
    """Encode one server-sent event."""

    return f"data: {json.dumps(payload, default=str)}\n\n"


def _decode_arguments(arguments: Any) -> Any:
    if isinstance(arguments, str):
        try:
            return json.loads(arguments) if arguments.strip() else {}
        except ValueError:
            return arguments
    return arguments if arguments is not None else {}


@dataclass(slots=True)
class PreparedTurn:
    """Everything resolved before the first byte is streamed."""

    request: TutorChatRequest
    session_id: Optional[UUID]
    conversation: NormalizedConversation
    system_prompt: str
    is_initialization: bool


@dataclass(slots=True)
class StreamState:
    steps: int = 0
    invocations: int = 0
    finish_reason: str = "stop"


class TutorService:
    """Run a tutoring turn: resume the session, normalize history, stream the model.

    The streamed body outlives the request handler, so database work uses
    sessions opened from ``session_factory`` rather than the request session.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        llm_service: LLMService,
        *,
        registry: CapabilityRegistry = tutor_capabilities,
        normalizer: ConversationNormalizer | None = None,
        max_steps: int | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.llm_service = llm_service
        self.registry = registry
        self.normalizer = normalizer or ConversationNormalizer()
        self.max_steps = max_steps or settings.TUTOR_MAX_STEPS
        self.temperature = settings.TUTOR_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.TUTOR_MAX_TOKENS

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------
    def open_turn(self, request: TutorChatRequest) -> PreparedTurn:
        """Resolve session and model turns; raises when history is unusable."""

        session_id = self._resume_session(request)
        conversation = self.normalizer.normalize(request.messages)
        initialization = is_initialization_message(request.messages)
        logger.info(
            "Tutor turn opened",
            learner_id=request.learner_id,
            session_id=str(session_id) if session_id else None,
            stage=conversation.stage,
            turns=len(conversation.turns),
            initialization=initialization,
        )
        return PreparedTurn(
            request=request,
            session_id=session_id,
            conversation=conversation,
            system_prompt=build_tutor_system_prompt(is_initialization=initialization),
            is_initialization=initialization,
        )

    def _resume_session(self, request: TutorChatRequest) -> Optional[UUID]:
        if not request.chat_id:
            return None
        db = self.session_factory()
        try:
            sessions = TutorSessionService(db)
            session = sessions.resume_or_create(
                external_chat_id=request.chat_id, learner_id=request.learner_id
            )
            session_id = session.id
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "Session persistence unavailable; continuing without a session",
                learner_id=request.learner_id,
                chat_id=request.chat_id,
            )
            db.close()
            return None

        try:
            sessions.record_user_turn(session_id, request.messages)
        finally:
            db.close()
        return session_id

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def stream_turn(self, turn: PreparedTurn) -> Iterator[str]:
        """Yield the server-sent events of one tutoring turn.

        Provider and capability failures become ``error`` / ``tool-error``
        events; the stream always ends with ``finish`` and ``[DONE]``.
        """

        yield sse_event(
            {"type": "start", "sessionId": str(turn.session_id) if turn.session_id else None}
        )
        state = StreamState()
        db = self.session_factory()
        context = CapabilityContext(
            db=db, learner_id=turn.request.learner_id, session_id=turn.session_id
        )
        try:
            yield from self._run_steps(turn, context, state)
        except Exception as exc:
            logger.exception(
                "Tutor stream aborted",
                learner_id=turn.request.learner_id,
                session_id=str(turn.session_id) if turn.session_id else None,
            )
            state.finish_reason = "error"
            yield sse_event({"type": "error", "errorText": str(exc)})
        finally:
            db.close()

        logger.info(
            "Tutor turn finished",
            learner_id=turn.request.learner_id,
            steps=state.steps,
            invocations=state.invocations,
            finish_reason=state.finish_reason,
        )
        yield sse_event({"type": "finish", "finishReason": state.finish_reason, "steps": state.steps})
        yield SSE_DONE

    def _run_steps(
        self, turn: PreparedTurn, context: CapabilityContext, state: StreamState
    ) -> Iterator[str]:
        turns: List[Dict[str, Any]] = list(turn.conversation.turns)
        tools = self.registry.schemas()

        while state.steps < self.max_steps:
            state.steps += 1
            text: List[str] = []
            calls: List[ToolCallRequest] = []
            step_finish: Optional[str] = None
            try:
                for event in self.llm_service.stream_chat_completion(
                    turns,
                    system_prompt=turn.system_prompt,
                    tools=tools,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ):
                    if isinstance(event, TextDelta):
                        text.append(event.text)
                        yield sse_event({"type": "text-delta", "delta": event.text})
                    elif isinstance(event, ToolCallRequest):
                        calls.append(event)
                    elif isinstance(event, StreamFinished):
                        step_finish = event.finish_reason
            except LLMProviderError as exc:
                logger.error("Tutor completion failed", step=state.steps, error=str(exc))
                state.finish_reason = "error"
                yield sse_event({"type": "error", "errorText": str(exc)})
                return

            if not calls:
                state.finish_reason = step_finish or "stop"
                return

            for call in calls:
                if not call.call_id:
                    call.call_id = f"call_{uuid.uuid4().hex}"
            turns.append(
                {
                    "role": "assistant",
                    "content": "".join(text),
                    "tool_calls": [
                        {"id": call.call_id, "name": call.name, "arguments": call.arguments}
                        for call in calls
                    ],
                }
            )
            for call in calls:
                yield sse_event(
                    {
                        "type": "tool-call",
                        "toolCallId": call.call_id,
                        "toolName": call.name,
                        "input": _decode_arguments(call.arguments),
                    }
                )
                invocation = self.registry.invoke(
                    call.name, call.arguments, context, call_id=call.call_id
                )
                state.invocations += 1
                yield self._invocation_event(invocation)
                turns.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.call_id,
                        "name": call.name,
                        "content": json.dumps(invocation.model_payload(), default=str),
                    }
                )

        state.finish_reason = "tool-calls"
        logger.warning("Tutor turn hit the step limit", steps=state.steps, learner_id=context.learner_id)

    @staticmethod
    def _invocation_event(invocation: CapabilityInvocation) -> str:
        if invocation.output is not None:
            return sse_event(
                {
                    "type": "tool-result",
                    "toolCallId": invocation.call_id,
                    "toolName": invocation.name,
                    "output": invocation.output,
                }
            )
        return sse_event(
            {
                "type": "tool-error",
                "toolCallId": invocation.call_id,
                "toolName": invocation.name,
                "errorText": invocation.error or "Capability failed",
            }
        )


__all__ = ["PreparedTurn", "SSE_DONE", "TutorService", "sse_event"]
