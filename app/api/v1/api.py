"""API router for version 1."""
from fastapi import APIRouter

from app.api.v1.endpoints import tutor, vocabulary


api_router = APIRouter()
api_router.include_router(tutor.router)
api_router.include_router(vocabulary.router)
