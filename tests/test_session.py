import pytest
from sqlalchemy.engine import Engine

from docsrag.services.rag.session import SessionStore
from docsrag.services.rag.types import Citation


def test_get_or_create_creates_then_reuses_session(engine: Engine) -> None:
    store = SessionStore(engine)

    created = store.get_or_create(None, user_id="user-1", page="/docs", user_agent="pytest")
    reused = store.get_or_create(created.session_id)

    assert created.created is True
    assert created.user_id == "user-1"
    assert reused.created is False
    assert reused.session_id == created.session_id
    assert reused.page == "/docs"
    assert reused.user_agent == "pytest"


def test_unknown_session_id_gets_a_fresh_identifier(engine: Engine) -> None:
    session = SessionStore(engine).get_or_create("not-a-real-session")

    assert session.created is True
    assert session.session_id != "not-a-real-session"


def test_history_returns_recent_messages_in_order(engine: Engine) -> None:
    store = SessionStore(engine)
    session_id = store.get_or_create(None).session_id
    for turn in range(7):
        store.append_user_message(session_id, f"question {turn}")
        store.append_assistant_message(session_id, f"answer {turn}", [])

    history = store.get_history(session_id)

    assert len(history) == 10
    assert history[0].content == "question 2"
    assert history[-1].content == "answer 6"
    assert [message.role for message in history[:2]] == ["user", "assistant"]
    assert len(store.get_history(session_id, limit=100)) == 14


def test_assistant_message_keeps_citations(engine: Engine) -> None:
    store = SessionStore(engine)
    session_id = store.get_or_create(None).session_id
    citation = Citation(title="Setup", url="/setup", section="Install", relevance_score=0.91)

    store.append_user_message(session_id, "how do I install?")
    store.append_assistant_message(session_id, "Run the installer.", [citation])

    user_message, assistant_message = store.get_history(session_id)
    assert user_message.sources is None
    assert assistant_message.sources == [citation]
    assert assistant_message.created_at is not None
    assert assistant_message.created_at.tzinfo is not None


def test_history_for_unknown_session_is_empty(engine: Engine) -> None:
    assert SessionStore(engine).get_history("missing") == []


def test_append_to_unknown_session_raises(engine: Engine) -> None:
    with pytest.raises(LookupError):
        SessionStore(engine).append_user_message("missing", "hello")
