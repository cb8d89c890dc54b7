"""FastAPI application factory."""
from __future__ import annotations

from typing import List

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.api.v1.api import api_router
from app.config import settings
from app.utils.exceptions import ConversationNormalizationError, RequestEnvelopeError


tags_metadata: List[dict[str, str]] = [
    {"name": "tutor", "description": "Stream tutoring turns and persist tutor conversations."},
    {"name": "vocabulary", "description": "Browse and update a learner's saved vocabulary."},
]


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Conversational vocabulary tutor for language learners.",
        version="0.1.0",
        openapi_tags=tags_metadata,
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Session-ID"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors(), "message": "Validation failed"},
        )

    @app.exception_handler(RequestEnvelopeError)
    async def request_envelope_exception_handler(
        request: Request, exc: RequestEnvelopeError
    ) -> JSONResponse:
        logger.warning("Rejected tutor request", field=exc.field, error=exc.message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": exc.message, "field": exc.field, "details": exc.details},
        )

    @app.exception_handler(ConversationNormalizationError)
    async def normalization_exception_handler(
        request: Request, exc: ConversationNormalizationError
    ) -> JSONResponse:
        logger.error("Conversation history unusable", error=exc.message, details=exc.details)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": exc.message, "details": exc.details.get("details", exc.message)},
        )

    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


app = create_app()
