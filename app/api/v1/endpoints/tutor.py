"""Conversational vocabulary tutor endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api import deps
from app.config import settings
from app.schemas import (
    SaveMessageRequest,
    SaveMessageResponse,
    TutorHistoryResponse,
    TutorMessageRead,
    parse_chat_request,
)
from app.services.session_service import TutorSessionService
from app.services.tutor_service import TutorService
from app.utils.exceptions import (
    RequestEnvelopeError,
    SessionError,
    handle_database_error,
    handle_session_error,
)

router = APIRouter(prefix="/tutor", tags=["tutor"])


@router.post("/chat")
async def tutor_chat(
    request: Request,
    tutor: TutorService = Depends(deps.get_tutor_service),
) -> StreamingResponse:
    """Stream one tutoring turn as server-sent events."""

    try:
        payload = await request.json()
    except ValueError as exc:
        raise RequestEnvelopeError(
            "Invalid request body", field="body", details={"reason": str(exc)}
        ) from exc

    chat_request = parse_chat_request(payload)
    turn = await run_in_threadpool(tutor.open_turn, chat_request)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    if turn.session_id is not None:
        headers["X-Session-ID"] = str(turn.session_id)
    return StreamingResponse(
        tutor.stream_turn(turn), media_type="text/event-stream", headers=headers
    )


@router.get("/sessions/{chat_id}/messages", response_model=TutorHistoryResponse)
def get_session_messages(
    chat_id: str,
    user_id: str = Query(..., alias="userId", min_length=1),
    db: Session = Depends(deps.get_db),
) -> TutorHistoryResponse:
    """Return the persisted messages of a tutor session."""

    sessions = TutorSessionService(db)
    session = sessions.get_session(external_chat_id=chat_id, learner_id=user_id)
    if session is None:
        raise handle_session_error(
            SessionError("Tutor session not found", {"chat_id": chat_id, "learner_id": user_id})
        )
    messages = sessions.list_messages(session.id, limit=settings.TUTOR_HISTORY_LIMIT)
    return TutorHistoryResponse(
        session_id=session.id,
        chat_id=chat_id,
        current_offset=session.current_offset or 0,
        messages=[TutorMessageRead.model_validate(message) for message in messages],
    )


@router.post(
    "/sessions/{chat_id}/messages",
    response_model=SaveMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def save_session_message(
    chat_id: str,
    payload: SaveMessageRequest,
    db: Session = Depends(deps.get_db),
) -> SaveMessageResponse:
    """Persist a finished message, creating the session on first use."""

    sessions = TutorSessionService(db)
    try:
        session = sessions.resume_or_create(external_chat_id=chat_id, learner_id=payload.user_id)
        message = sessions.append_message(
            session.id,
            role=payload.message.role,
            content=payload.message.stored_content(),
            message_index=payload.message_index,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise handle_database_error(exc) from exc

    logger.debug(
        "Tutor message saved",
        session_id=str(session.id),
        role=message.role,
        message_index=message.message_index,
    )
    return SaveMessageResponse(session_id=session.id, message=TutorMessageRead.model_validate(message))
