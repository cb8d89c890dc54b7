"""Pydantic schemas for the vocabulary tutor endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.utils.exceptions import RequestEnvelopeError


class TutorChatRequest(BaseModel):
    """Canonical conversational turn, independent of the wire shape."""

    messages: List[Any]
    learner_id: str
    chat_id: Optional[str] = None


class FlatChatRequest(BaseModel):
    """``{messages, userId, chatId}`` request body."""

    messages: Any = None
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatId", "chat_id"))

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class EnvelopePart(BaseModel):
    type: str
    text: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class EnvelopeMessage(BaseModel):
    id: str
    role: str = "user"
    parts: List[EnvelopePart]

    model_config = ConfigDict(extra="allow")


class ChatEnvelopeRequest(BaseModel):
    """``{id, message, selectedChatModel}`` request body."""

    id: str
    message: EnvelopeMessage
    selected_chat_model: str = Field(alias="selectedChatModel")
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatId", "chat_id"))

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


def is_envelope_shape(payload: Dict[str, Any]) -> bool:
    return bool(payload.get("id") and payload.get("message") and payload.get("selectedChatModel"))


_FIELD_NAMES = {"user_id": "userId", "chat_id": "chatId", "selected_chat_model": "selectedChatModel"}


def _invalid_body(exc: ValidationError) -> RequestEnvelopeError:
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    location = errors[0]["loc"] if errors and errors[0]["loc"] else ("body",)
    field = _FIELD_NAMES.get(str(location[0]), str(location[0]))
    return RequestEnvelopeError("Invalid request body", field=field, details={"errors": errors})


def _from_envelope(payload: Dict[str, Any]) -> TutorChatRequest:
    try:
        envelope = ChatEnvelopeRequest.model_validate(payload)
    except ValidationError as exc:
        raise _invalid_body(exc) from exc

    text = " ".join(part.text for part in envelope.message.parts if part.type == "text" and part.text)
    message = {"id": envelope.message.id, "role": envelope.message.role, "content": text}
    return _canonical(
        messages=[message],
        learner_id=envelope.user_id,
        chat_id=envelope.chat_id or envelope.id,
        body_keys=list(payload),
    )


def _from_flat(payload: Dict[str, Any]) -> TutorChatRequest:
    try:
        flat = FlatChatRequest.model_validate(payload)
    except ValidationError as exc:
        raise _invalid_body(exc) from exc
    return _canonical(
        messages=flat.messages,
        learner_id=flat.user_id,
        chat_id=flat.chat_id,
        body_keys=list(payload),
    )


def _canonical(
    *, messages: Any, learner_id: Optional[str], chat_id: Optional[str], body_keys: List[str]
) -> TutorChatRequest:
    if not learner_id or not learner_id.strip():
        raise RequestEnvelopeError(
            "User ID is required",
            field="userId",
            details={"receivedUserId": learner_id, "bodyKeys": body_keys},
        )
    if not isinstance(messages, list):
        raise RequestEnvelopeError(
            "Messages array is required",
            field="messages",
            details={"receivedType": type(messages).__name__},
        )
    return TutorChatRequest(messages=messages, learner_id=learner_id, chat_id=chat_id or None)


def parse_chat_request(payload: Any) -> TutorChatRequest:
    """Flatten either accepted request shape into a :class:`TutorChatRequest`."""

    if not isinstance(payload, dict):
        raise RequestEnvelopeError(
            "Invalid request body",
            field="body",
            details={"receivedType": type(payload).__name__},
        )
    if is_envelope_shape(payload):
        return _from_envelope(payload)
    return _from_flat(payload)


class TutorMessageRead(BaseModel):
    """Persisted tutor conversation message."""

    id: UUID
    role: str
    content: Dict[str, Any]
    message_index: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TutorHistoryResponse(BaseModel):
    session_id: UUID
    chat_id: str
    current_offset: int
    messages: List[TutorMessageRead]


class SavedMessageBody(BaseModel):
    role: str = Field(pattern="^(user|assistant|system)$")
    content: Optional[str] = None
    text: Optional[str] = None
    tool_invocations: Optional[List[Dict[str, Any]]] = Field(
        default=None, validation_alias=AliasChoices("toolInvocations", "tool_invocations")
    )

    def stored_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"text": self.content if self.content is not None else (self.text or "")}
        if self.tool_invocations:
            content["toolInvocations"] = self.tool_invocations
        return content


class SaveMessageRequest(BaseModel):
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "user_id"))
    message: SavedMessageBody
    message_index: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("messageIndex", "message_index")
    )


class SaveMessageResponse(BaseModel):
    session_id: UUID
    message: TutorMessageRead
