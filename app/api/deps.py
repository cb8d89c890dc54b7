"""Shared API dependencies."""
from __future__ import annotations

from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from app.db.session import SessionLocal, get_db
from app.services.llm_service import LLMService
from app.services.tutor_service import TutorService
from app.utils.exceptions import LLMServiceError, handle_llm_service_error

_llm_service_singleton: LLMService | None = None


def get_session_factory() -> Callable[[], Session]:
    """Return the factory used for work that outlives the request handler."""

    return SessionLocal


def get_llm_service() -> LLMService:
    """Return a cached LLM service instance or raise if unavailable."""

    global _llm_service_singleton
    if _llm_service_singleton is None:
        try:
            _llm_service_singleton = LLMService()
        except ValueError as exc:
            raise handle_llm_service_error(
                LLMServiceError("LLM providers are not configured", {"reason": str(exc)})
            ) from exc
    return _llm_service_singleton


def get_tutor_service(
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    llm_service: LLMService = Depends(get_llm_service),
) -> TutorService:
    """Assemble the tutor orchestrator with request-scoped dependencies."""

    return TutorService(session_factory, llm_service)
