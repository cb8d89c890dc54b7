"""End-to-end tests for the tutor endpoints."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.config import settings
from app.db.models import LearnerVocabulary, TutorMessage, TutorSession
from app.services.llm_service import LLMProviderError, StreamFinished, TextDelta, ToolCallRequest
from app.services.session_service import TutorSessionService

CHAT_URL = "/api/v1/tutor/chat"


def _finish(reason: str = "stop") -> StreamFinished:
    return StreamFinished(provider="stub", model="stub", finish_reason=reason)


def _call(name: str, arguments: dict, call_id: str = "call-1") -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, arguments=json.dumps(arguments))


def _chat(client, messages, **extra):
    body = {"messages": messages, "userId": "learner-1", **extra}
    return client.post(CHAT_URL, json=body)


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def test_missing_user_id_returns_400(client):
    response = client.post(CHAT_URL, json={"messages": [{"role": "user", "content": "hello"}]})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "User ID is required"
    assert body["field"] == "userId"


def test_messages_must_be_an_array(client):
    response = client.post(CHAT_URL, json={"messages": "hello", "userId": "learner-1"})

    assert response.status_code == 400
    assert response.json()["field"] == "messages"


def test_body_must_be_json(client):
    response = client.post(CHAT_URL, content="not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request body"
    assert body["field"] == "body"


@pytest.mark.parametrize(
    "overrides,field",
    [({"userId": {"id": "x"}}, "userId"), ({"userId": True}, "userId"), ({"chatId": ["c"]}, "chatId")],
)
def test_wrongly_typed_fields_return_400(client, llm_stub, overrides, field):
    response = client.post(
        CHAT_URL,
        json={"messages": [{"role": "user", "content": "hi"}], "userId": "learner-1", **overrides},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Invalid request body"
    assert body["field"] == field
    assert llm_stub.calls == []


def test_unusable_history_returns_500(client, llm_stub):
    response = _chat(client, [{"role": "user", "content": 42}])

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Message conversion failed completely"
    assert "no text content" in body["details"]
    assert llm_stub.calls == []


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def test_chat_streams_events_and_reports_session(client, db_session, llm_stub, sse_events):
    llm_stub.steps = [[TextDelta("Hallo! "), TextDelta("Bereit?"), _finish()]]

    response = _chat(client, [{"role": "user", "content": "hello"}], chatId="chat-1")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert [event if isinstance(event, str) else event["type"] for event in events] == [
        "start",
        "text-delta",
        "text-delta",
        "finish",
        "[DONE]",
    ]
    assert events[0]["sessionId"] == response.headers["X-Session-ID"]
    assert events[3] == {"type": "finish", "finishReason": "stop", "steps": 1}

    db_session.expire_all()
    session = TutorSessionService(db_session).get_session(external_chat_id="chat-1", learner_id="learner-1")
    assert str(session.id) == response.headers["X-Session-ID"]
    assert [m.content for m in session.messages] == [{"text": "hello"}]


@pytest.mark.asyncio
async def test_chat_streams_over_asgi(async_client, llm_stub, sse_events):
    llm_stub.steps = [[TextDelta("Eins "), TextDelta("zwei"), _finish()]]

    chunks = []
    async with async_client.stream(
        "POST", CHAT_URL, json={"messages": [{"role": "user", "content": "count"}], "userId": "learner-1"}
    ) as response:
        assert response.status_code == 200
        async for chunk in response.aiter_text():
            chunks.append(chunk)

    events = sse_events("".join(chunks))
    assert [e["delta"] for e in events if isinstance(e, dict) and e["type"] == "text-delta"] == ["Eins ", "zwei"]
    assert events[-1] == "[DONE]"


def test_initialization_selects_welcome_prompt(client, llm_stub):
    _chat(client, [{"role": "user", "content": "hello"}])
    _chat(
        client,
        [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "Hallo!"},
            {"role": "user", "content": "Let's go"},
        ],
    )

    assert "INITIALIZATION MESSAGE" in llm_stub.calls[0]["system_prompt"]
    assert "CONTINUED CONVERSATION" in llm_stub.calls[1]["system_prompt"]
    assert {tool["name"] for tool in llm_stub.calls[0]["tools"]} >= {"fetchVocabularyBatch", "updateProgress"}


def test_chat_without_chat_id_has_no_session(client, db_session, sse_events):
    response = _chat(client, [{"role": "user", "content": "hello"}])

    assert response.status_code == 200
    assert "X-Session-ID" not in response.headers
    assert sse_events(response.text)[0] == {"type": "start", "sessionId": None}
    assert db_session.scalar(select(func.count()).select_from(TutorSession)) == 0


def test_session_store_outage_does_not_block_the_turn(client, monkeypatch, sse_events):
    def unavailable(self, **kwargs):
        raise OperationalError("SELECT", {}, Exception("could not connect to server"))

    monkeypatch.setattr(TutorSessionService, "resume_or_create", unavailable)

    response = _chat(client, [{"role": "user", "content": "hello"}], chatId="chat-1")

    assert response.status_code == 200
    assert "X-Session-ID" not in response.headers
    assert sse_events(response.text)[-1] == "[DONE]"


def test_envelope_request_is_streamed(client, db_session, llm_stub):
    response = client.post(
        CHAT_URL,
        json={
            "id": "conversation-3",
            "message": {"id": "m1", "role": "user", "parts": [{"type": "text", "text": "hello"}]},
            "selectedChatModel": "chat-model",
            "userId": "learner-1",
        },
    )

    assert response.status_code == 200
    assert llm_stub.calls[0]["turns"] == [{"role": "user", "content": "hello"}]
    db_session.expire_all()
    assert TutorSessionService(db_session).get_session(
        external_chat_id="conversation-3", learner_id="learner-1"
    ) is not None


def test_capability_round_trip_feeds_result_back_to_model(client, db_session, make_words, llm_stub, sse_events):
    make_words(12)
    llm_stub.steps = [
        [
            TextDelta("Let me load your words."),
            _call("fetchVocabularyBatch", {"offset": 10, "conversation_continue": "Here they are!"}),
            _finish("tool_calls"),
        ],
        [TextDelta("Let's start with wort10."), _finish()],
    ]

    response = _chat(client, [{"role": "user", "content": "hello"}], chatId="chat-1")
    events = [event for event in sse_events(response.text) if isinstance(event, dict)]

    call_event = next(event for event in events if event["type"] == "tool-call")
    result_event = next(event for event in events if event["type"] == "tool-result")
    assert call_event["input"] == {"offset": 10, "conversation_continue": "Here they are!"}
    assert result_event["toolName"] == "fetchVocabularyBatch"
    assert [word["term"] for word in result_event["output"]["words"]] == ["wort10", "wort11"]
    assert events[-1] == {"type": "finish", "finishReason": "stop", "steps": 2}

    second_turns = llm_stub.calls[1]["turns"]
    assert second_turns[-2]["tool_calls"][0]["id"] == "call-1"
    assert second_turns[-1]["role"] == "tool"
    assert json.loads(second_turns[-1]["content"])["conversation_continue"] == "Here they are!"

    db_session.expire_all()
    session = TutorSessionService(db_session).get_session(external_chat_id="chat-1", learner_id="learner-1")
    assert session.current_offset == 10


def test_rejected_milestone_is_streamed_as_result_without_write(
    client, db_session, llm_stub, sse_events
):
    word = LearnerVocabulary(learner_id="learner-1", term="Freund", learning_status=3)
    db_session.add(word)
    db_session.commit()
    llm_stub.steps = [
        [
            _call(
                "celebrateMilestone",
                {"term": "Freund", "milestoneLevel": 4, "previousStatus": 3, "message": "Toll!", "nextSteps": "Weiter."},
            ),
            _finish("tool_calls"),
        ],
        [TextDelta("Keep going!"), _finish()],
    ]

    response = _chat(client, [{"role": "user", "content": "I know Freund now"}])
    events = [event for event in sse_events(response.text) if isinstance(event, dict)]

    result = next(event for event in events if event["type"] == "tool-result")
    assert result["output"] == {"error": "Milestone celebrations only for levels 3 and 5"}
    db_session.expire_all()
    assert db_session.get(LearnerVocabulary, word.id).learning_status == 3


def test_invalid_capability_arguments_stream_tool_error(client, llm_stub, sse_events):
    llm_stub.steps = [
        [_call("updateProgress", {"term": "Freund", "newStatus": 11}), _finish("tool_calls")],
        [TextDelta("Sorry about that."), _finish()],
    ]

    response = _chat(client, [{"role": "user", "content": "next"}])
    events = [event for event in sse_events(response.text) if isinstance(event, dict)]

    error = next(event for event in events if event["type"] == "tool-error")
    assert error["toolName"] == "updateProgress"
    assert error["errorText"].startswith("Invalid arguments")
    assert json.loads(llm_stub.calls[1]["turns"][-1]["content"])["error"].startswith("Invalid arguments")


def test_provider_failure_is_reported_in_stream(client, llm_stub, sse_events):
    llm_stub.steps = [[TextDelta("Hal"), LLMProviderError("openai: connection reset")]]

    response = _chat(client, [{"role": "user", "content": "hello"}])
    events = sse_events(response.text)

    assert response.status_code == 200
    assert {"type": "error", "errorText": "openai: connection reset"} in events
    assert events[-2] == {"type": "finish", "finishReason": "error", "steps": 1}
    assert events[-1] == "[DONE]"


def test_step_limit_ends_the_turn(client, llm_stub, sse_events, monkeypatch):
    monkeypatch.setattr(settings, "TUTOR_MAX_STEPS", 2)
    llm_stub.steps = [
        [_call("pronunciationExercise", {"word": "Haus"}, call_id=f"c{index}"), _finish("tool_calls")]
        for index in range(5)
    ]

    response = _chat(client, [{"role": "user", "content": "pronounce"}])
    events = sse_events(response.text)

    assert len(llm_stub.calls) == 2
    assert events[-2] == {"type": "finish", "finishReason": "tool-calls", "steps": 2}


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

def test_history_for_unknown_session_is_404(client):
    response = client.get("/api/v1/tutor/sessions/nope/messages", params={"userId": "learner-1"})

    assert response.status_code == 404


def test_saved_messages_are_listed_in_order(client):
    _chat(client, [{"role": "user", "content": "hello"}], chatId="chat-7")
    saved = client.post(
        "/api/v1/tutor/sessions/chat-7/messages",
        json={
            "userId": "learner-1",
            "message": {
                "role": "assistant",
                "content": "Hallo! Bereit?",
                "toolInvocations": [{"toolCallId": "c1", "toolName": "table", "state": "result"}],
            },
        },
    )

    assert saved.status_code == 201
    assert saved.json()["message"]["message_index"] == 1

    history = client.get("/api/v1/tutor/sessions/chat-7/messages", params={"userId": "learner-1"})
    assert history.status_code == 200
    body = history.json()
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
    assert body["messages"][1]["content"]["toolInvocations"][0]["toolName"] == "table"
    assert body["current_offset"] == 0


def test_saving_a_message_creates_the_session(client, db_session):
    response = client.post(
        "/api/v1/tutor/sessions/chat-new/messages",
        json={"userId": "learner-1", "message": {"role": "user", "text": "hi"}, "messageIndex": 4},
    )

    assert response.status_code == 201
    assert response.json()["message"]["content"] == {"text": "hi"}
    assert db_session.scalar(select(func.count()).select_from(TutorMessage)) == 1


def test_saving_a_message_validates_role(client):
    response = client.post(
        "/api/v1/tutor/sessions/chat-1/messages",
        json={"userId": "learner-1", "message": {"role": "robot", "content": "beep"}},
    )

    assert response.status_code == 422

