"""Tests for durable tutor sessions."""
from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.db.models import TutorMessage, TutorSession
from app.services.session_service import TutorSessionService


def test_resume_or_create_creates_once_per_chat_and_learner(db_session):
    service = TutorSessionService(db_session)

    first = service.resume_or_create(external_chat_id="chat-1", learner_id="learner-1")
    again = service.resume_or_create(external_chat_id="chat-1", learner_id="learner-1")
    other = service.resume_or_create(external_chat_id="chat-1", learner_id="learner-2")

    assert first.id == again.id
    assert other.id != first.id
    assert first.current_offset == 0
    assert first.task_type == "vocabulary_tutor_v2"
    assert db_session.scalar(select(func.count()).select_from(TutorSession)) == 2


def test_resume_touches_last_activity(db_session):
    service = TutorSessionService(db_session)
    created = service.resume_or_create(external_chat_id="chat-1", learner_id="learner-1")
    first_seen = created.last_activity_at

    resumed = service.resume_or_create(external_chat_id="chat-1", learner_id="learner-1")

    assert resumed.last_activity_at >= first_seen


def test_update_cursor_persists_offset(db_session, tutor_session):
    assert TutorSessionService(db_session).update_cursor(tutor_session.id, 20) is True

    db_session.expire_all()
    assert db_session.get(TutorSession, tutor_session.id).current_offset == 20


def test_update_cursor_failure_is_reported(db_session, tutor_session, monkeypatch):
    service = TutorSessionService(db_session)

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE tutor_sessions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "execute", broken)

    assert service.update_cursor(tutor_session.id, 10) is False


def test_user_turns_get_sequential_indexes(db_session, tutor_session):
    service = TutorSessionService(db_session)

    service.record_user_turn(tutor_session.id, [{"role": "user", "content": "hello"}])
    service.record_user_turn(
        tutor_session.id,
        [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Hallo!"},
            {"role": "user", "parts": [{"type": "text", "text": "Was heißt Freund?"}]},
        ],
    )

    messages = service.list_messages(tutor_session.id, limit=10)
    assert [(m.message_index, m.content["text"]) for m in messages] == [
        (0, "hello"),
        (1, "Was heißt Freund?"),
    ]


def test_non_user_last_message_is_not_recorded(db_session, tutor_session):
    service = TutorSessionService(db_session)

    assert service.record_user_turn(tutor_session.id, [{"role": "assistant", "content": "Hi"}]) is None
    assert service.record_user_turn(tutor_session.id, []) is None
    assert db_session.scalar(select(func.count()).select_from(TutorMessage)) == 0


def test_record_user_turn_failure_is_swallowed(db_session, tutor_session, monkeypatch):
    service = TutorSessionService(db_session)

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO tutor_messages", {}, Exception("disk full"))

    monkeypatch.setattr(service, "append_message", broken)

    assert service.record_user_turn(tutor_session.id, [{"role": "user", "content": "hi"}]) is None


def test_list_messages_respects_limit_and_order(db_session, tutor_session):
    service = TutorSessionService(db_session)
    service.append_message(tutor_session.id, role="assistant", content={"text": "second"}, message_index=1)
    service.append_message(tutor_session.id, role="user", content={"text": "first"}, message_index=0)
    service.append_message(tutor_session.id, role="user", content={"text": "third"})

    messages = service.list_messages(tutor_session.id, limit=2)

    assert [m.content["text"] for m in messages] == ["first", "second"]
    assert service.list_messages(tutor_session.id, limit=10)[-1].message_index == 2
