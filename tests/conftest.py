"""Pytest fixtures for API and engine tests."""

import json
from collections.abc import AsyncGenerator, Callable, Generator, Iterable
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db, get_llm_service, get_session_factory
from app.db import models  # noqa: F401  # Imported for side effects
from app.db.base import Base
from app.db.models import LearnerVocabulary, TutorSession
from app.main import create_app
from app.services.llm_service import StreamFinished, TextDelta

LEARNER_ID = "learner-1"


class ScriptedLLMService:
    """Replay one scripted list of events per model step."""

    def __init__(self, steps: Iterable[list] | None = None) -> None:
        self.steps = list(steps or [])
        self.calls: list[dict] = []

    def stream_chat_completion(self, turns, **kwargs):
        self.calls.append({"turns": [dict(turn) for turn in turns], **kwargs})
        if self.steps:
            step = self.steps.pop(0)
        else:
            step = [TextDelta("Weiter geht's!"), StreamFinished(provider="stub", model="stub", finish_reason="stop")]
        for event in step:
            if isinstance(event, Exception):
                raise event
            yield event


def parse_events(body: str) -> list:
    """Decode a server-sent event body into payloads (``[DONE]`` kept as a string)."""

    events = []
    for chunk in body.split("\n\n"):
        chunk = chunk.strip()
        if not chunk.startswith("data:"):
            continue
        data = chunk[len("data:"):].strip()
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_words(db_session: Session) -> Callable[..., list[LearnerVocabulary]]:
    """Create vocabulary rows with strictly increasing creation times."""

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    counter = {"value": 0}

    def _make(
        count: int,
        *,
        learner_id: str = LEARNER_ID,
        status: int = 0,
        prefix: str = "wort",
    ) -> list[LearnerVocabulary]:
        words = []
        for _ in range(count):
            index = counter["value"]
            counter["value"] += 1
            words.append(
                LearnerVocabulary(
                    learner_id=learner_id,
                    term=f"{prefix}{index}",
                    translation=f"word {index}",
                    learning_status=status,
                    created_at=base + timedelta(minutes=index),
                )
            )
        db_session.add_all(words)
        db_session.commit()
        return words

    return _make


@pytest.fixture()
def tutor_session(db_session: Session) -> TutorSession:
    session = TutorSession(
        external_chat_id="chat-1",
        learner_id=LEARNER_ID,
        task_type="vocabulary_tutor_v2",
        current_offset=0,
    )
    db_session.add(session)
    db_session.commit()
    return session


@pytest.fixture()
def llm_stub() -> ScriptedLLMService:
    return ScriptedLLMService()


def _build_app(db_session: Session, session_factory: sessionmaker, llm_stub: ScriptedLLMService):
    app = create_app()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_llm_service] = lambda: llm_stub
    return app


@pytest.fixture()
def client(
    db_session: Session, session_factory: sessionmaker, llm_stub: ScriptedLLMService
) -> Generator[TestClient, None, None]:
    with TestClient(_build_app(db_session, session_factory, llm_stub)) as test_client:
        yield test_client


@pytest_asyncio.fixture()
async def async_client(
    db_session: Session, session_factory: sessionmaker, llm_stub: ScriptedLLMService
) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=_build_app(db_session, session_factory, llm_stub))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client


@pytest.fixture()
def sse_events() -> Callable[[str], list]:
    return parse_events
