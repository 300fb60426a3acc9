from __future__ import annotations

from dataclasses import dataclass
import uuid

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docsrag.models import ConversationMessageRecord, ConversationRecord
from docsrag.services.rag.runs import as_utc, utcnow
from docsrag.services.rag.types import ChatMessage, Citation

DEFAULT_HISTORY_LIMIT = 10


@dataclass(frozen=True)
class ChatSession:
    session_id: str
    user_id: str | None
    page: str
    user_agent: str
    created: bool


def _citation_from_dict(payload: dict) -> Citation:
    return Citation(
        title=str(payload.get("title", "")),
        url=str(payload.get("url", "")),
        section=str(payload.get("section", "")),
        relevance_score=float(payload.get("relevance_score", 0.0)),
    )


def _to_message(record: ConversationMessageRecord) -> ChatMessage:
    return ChatMessage(
        role=record.role,
        content=record.content,
        created_at=as_utc(record.created_at),
        sources=(
            [_citation_from_dict(item) for item in record.sources]
            if record.sources is not None
            else None
        ),
        feedback=record.feedback,
    )


class SessionStore:
    """Conversation log keyed by session id.

    Messages are never trimmed from storage; ``get_history`` only windows
    the most recent ones. Appends to one session assume a single writer.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_or_create(
        self,
        session_id: str | None,
        *,
        user_id: str | None = None,
        page: str = "",
        user_agent: str = "",
    ) -> ChatSession:
        with Session(self._engine) as session:
            if session_id:
                existing = session.get(ConversationRecord, session_id)
                if existing is not None:
                    return ChatSession(
                        session_id=existing.session_id,
                        user_id=existing.user_id,
                        page=existing.page,
                        user_agent=existing.user_agent,
                        created=False,
                    )

            record = ConversationRecord(
                session_id=str(uuid.uuid4()),
                user_id=user_id,
                page=page,
                user_agent=user_agent,
                created_at=utcnow(),
            )
            session.add(record)
            session.commit()
            return ChatSession(
                session_id=record.session_id,
                user_id=user_id,
                page=page,
                user_agent=user_agent,
                created=True,
            )

    def append_user_message(self, session_id: str, content: str) -> None:
        self._append(session_id, role="user", content=content, sources=None)

    def append_assistant_message(
        self,
        session_id: str,
        content: str,
        sources: list[Citation],
    ) -> None:
        self._append(
            session_id,
            role="assistant",
            content=content,
            sources=[citation.to_dict() for citation in sources],
        )

    def _append(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        sources: list[dict] | None,
    ) -> None:
        with Session(self._engine) as session, session.begin():
            if session.get(ConversationRecord, session_id) is None:
                raise LookupError(f"Unknown chat session: {session_id}")
            session.add(
                ConversationMessageRecord(
                    session_id=session_id,
                    role=role,
                    content=content,
                    sources=sources,
                    created_at=utcnow(),
                )
            )

    def get_history(self, session_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[ChatMessage]:
        if limit <= 0:
            return []
        with Session(self._engine) as session:
            records = session.scalars(
                select(ConversationMessageRecord)
                .where(ConversationMessageRecord.session_id == session_id)
                .order_by(ConversationMessageRecord.id.desc())
                .limit(limit)
            ).all()
            return [_to_message(record) for record in reversed(records)]
