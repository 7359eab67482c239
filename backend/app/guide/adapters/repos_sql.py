from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from app.models import (
    SESSION_SUMMARY_ARTIFACT_TYPE,
    Artifact,
    ChatConversation,
    ChatMessage,
    ChatSession,
    ChatSessionMemoryNote,
    UserMemoryState,
)

sessions_t = ChatSession.__table__
messages_t = ChatMessage.__table__
conversations_t = ChatConversation.__table__
notes_t = ChatSessionMemoryNote.__table__
memory_t = UserMemoryState.__table__
artifacts_t = Artifact.__table__


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ChatRepoSQL:
    """
    All chat persistence in one place: SQLAlchemy Core statements over the
    declarative tables. Engine comes from ``app.deps``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    # --- sessions + messages ---
    def upsert_session_with_messages(
        self,
        *,
        user_id: str,
        kind: str,
        session_id: str,
        title: str,
        started_at: datetime,
        ended_at: datetime,
        messages: Sequence[Mapping[str, Any]],
    ) -> str:
        """
        Upsert the session row by (user_id, kind, session_id) and replace its
        messages, all in one transaction. Returns the row id.
        """
        try:
            with self.engine.begin() as conn:
                return self._upsert_session_tx(
                    conn, user_id, kind, session_id, title, started_at, ended_at, messages
                )
        except IntegrityError:
            # a concurrent save created the row first; this attempt becomes an update
            with self.engine.begin() as conn:
                return self._upsert_session_tx(
                    conn, user_id, kind, session_id, title, started_at, ended_at, messages
                )

    def _upsert_session_tx(
        self,
        conn: Connection,
        user_id: str,
        kind: str,
        session_id: str,
        title: str,
        started_at: datetime,
        ended_at: datetime,
        messages: Sequence[Mapping[str, Any]],
    ) -> str:
        now = _now()
        row_id = conn.execute(
            select(sessions_t.c.id).where(
                sessions_t.c.user_id == user_id,
                sessions_t.c.kind == kind,
                sessions_t.c.session_id == session_id,
            )
        ).scalar_one_or_none()

        if row_id is None:
            row_id = conn.execute(
                insert(sessions_t)
                .values(
                    user_id=user_id,
                    kind=kind,
                    session_id=session_id,
                    title=title,
                    started_at=started_at,
                    ended_at=ended_at,
                    created_at=now,
                    updated_at=now,
                )
                .returning(sessions_t.c.id)
            ).scalar_one()
        else:
            conn.execute(
                update(sessions_t)
                .where(sessions_t.c.id == row_id)
                .values(title=title, ended_at=ended_at, updated_at=now)
            )

        conn.execute(delete(messages_t).where(messages_t.c.chat_session_id == row_id))
        if messages:
            conn.execute(
                insert(messages_t),
                [
                    {
                        "chat_session_id": row_id,
                        "position": position,
                        "role": m["role"],
                        "content": m["content"],
                        "actions": m.get("actions"),
                        "client_timestamp": m.get("client_timestamp"),
                        "created_at": now,
                    }
                    for position, m in enumerate(messages)
                ],
            )
        return str(row_id)

    def list_sessions(self, user_id: str, *, kind: str | None = None, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        message_count = (
            select(func.count())
            .select_from(messages_t)
            .where(messages_t.c.chat_session_id == sessions_t.c.id)
            .scalar_subquery()
        )
        stmt = select(
            sessions_t.c.session_id,
            sessions_t.c.kind,
            sessions_t.c.title,
            sessions_t.c.started_at,
            sessions_t.c.ended_at,
            message_count.label("message_count"),
        ).where(sessions_t.c.user_id == user_id)
        if kind:
            stmt = stmt.where(sessions_t.c.kind == kind)
        stmt = stmt.order_by(sessions_t.c.ended_at.desc()).limit(limit).offset(offset)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        items = []
        for r in rows:
            d = dict(r)
            d["started_at"] = _as_utc(d["started_at"])
            d["ended_at"] = _as_utc(d["ended_at"])
            items.append(d)
        return items

    def get_session_transcript(self, user_id: str, session_id: str, *, kind: str | None = None) -> dict[str, Any] | None:
        stmt = select(sessions_t).where(
            sessions_t.c.user_id == user_id,
            sessions_t.c.session_id == session_id,
        )
        if kind:
            stmt = stmt.where(sessions_t.c.kind == kind)

        with self.engine.connect() as conn:
            session_row = conn.execute(stmt.order_by(sessions_t.c.ended_at.desc()).limit(1)).mappings().first()
            if session_row is None:
                return None
            message_rows = conn.execute(
                select(messages_t)
                .where(messages_t.c.chat_session_id == session_row["id"])
                .order_by(messages_t.c.position)
            ).mappings().all()

        return {
            "session_id": session_row["session_id"],
            "kind": session_row["kind"],
            "title": session_row["title"],
            "started_at": _as_utc(session_row["started_at"]),
            "ended_at": _as_utc(session_row["ended_at"]),
            "messages": [
                {
                    "role": m["role"],
                    "content": m["content"],
                    "actions": m["actions"],
                    "timestamp": m["client_timestamp"] or _as_utc(m["created_at"]).isoformat(),
                }
                for m in message_rows
            ],
        }

    # --- conversation pointer ---
    def create_conversation_pointer(
        self,
        *,
        user_id: str,
        conversation_id: str,
        entrypoint: str = "other",
        mode: str = "general",
    ) -> bool:
        """False when the pointer already exists."""
        now = _now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(conversations_t).values(
                        conversation_id=conversation_id,
                        user_id=user_id,
                        entrypoint=entrypoint,
                        mode=mode,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            return False
        return True

    def delete_conversation_pointer(self, conversation_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(conversations_t).where(conversations_t.c.conversation_id == conversation_id)
            )
        return result.rowcount or 0

    # --- session notes + durable memory ---
    def add_session_note(
        self,
        *,
        user_id: str,
        conversation_id: str,
        text: str,
        keywords: Iterable[str] = (),
        expires_at: datetime | None = None,
    ) -> str:
        with self.engine.begin() as conn:
            note_id = conn.execute(
                insert(notes_t)
                .values(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    text=text,
                    keywords=list(keywords),
                    expires_at=expires_at,
                    created_at=_now(),
                )
                .returning(notes_t.c.id)
            ).scalar_one()
        return str(note_id)

    def list_session_notes(self, user_id: str, conversation_id: str, *, limit: int = 200) -> list[dict[str, Any]]:
        stmt = (
            select(notes_t.c.text, notes_t.c.keywords, notes_t.c.created_at, notes_t.c.expires_at)
            .where(notes_t.c.user_id == user_id, notes_t.c.conversation_id == conversation_id)
            .order_by(notes_t.c.created_at.asc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            {
                "text": r["text"],
                "keywords": r["keywords"] or [],
                "created_at": _as_utc(r["created_at"]),
                "expires_at": _as_utc(r["expires_at"]),
            }
            for r in rows
        ]

    def get_user_memory_notes(self, user_id: str) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            notes = conn.execute(
                select(memory_t.c.global_notes).where(memory_t.c.user_id == user_id)
            ).scalar_one_or_none()
        return list(notes or [])

    def replace_memory_and_clear_notes(
        self,
        *,
        user_id: str,
        conversation_id: str,
        notes: Sequence[Mapping[str, Any]],
        schema_version: str,
    ) -> None:
        """Upsert the durable memory state and delete the consumed session notes atomically."""
        now = _now()
        payload = [dict(n) for n in notes]
        with self.engine.begin() as conn:
            updated = conn.execute(
                update(memory_t)
                .where(memory_t.c.user_id == user_id)
                .values(global_notes=payload, schema_version=schema_version, updated_at=now)
            ).rowcount
            if not updated:
                conn.execute(
                    insert(memory_t).values(
                        user_id=user_id,
                        schema_version=schema_version,
                        global_notes=payload,
                        created_at=now,
                        updated_at=now,
                    )
                )
            conn.execute(
                delete(notes_t).where(
                    notes_t.c.user_id == user_id,
                    notes_t.c.conversation_id == conversation_id,
                )
            )

    # --- artifacts ---
    def session_summary_exists(self, user_id: str, session_id: str) -> bool:
        stmt = select(artifacts_t.c.id).where(
            and_(
                artifacts_t.c.user_id == user_id,
                artifacts_t.c.session_id == session_id,
                artifacts_t.c.type == SESSION_SUMMARY_ARTIFACT_TYPE,
                artifacts_t.c.status == "active",
            )
        ).limit(1)
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def create_artifact(
        self,
        *,
        user_id: str,
        session_id: str | None,
        scope: str,
        type: str,
        title: str | None,
        content: str,
        content_hash: str,
        tags: Sequence[str] = (),
        scripture_refs: Sequence[str] = (),
        metadata: Mapping[str, Any] | None = None,
        source: str = "system",
    ) -> bool:
        """
        Insert one artifact. False when the active-summary unique index
        already holds a row for this (user, session).
        """
        now = _now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(artifacts_t).values(
                        {
                            "user_id": user_id,
                            "session_id": session_id,
                            "scope": scope,
                            "type": type,
                            "title": title,
                            "content": content,
                            "content_hash": content_hash,
                            "tags": list(tags),
                            "scripture_refs": list(scripture_refs),
                            "metadata": dict(metadata or {}),
                            "source": source,
                            "status": "active",
                            "created_at": now,
                            "updated_at": now,
                        }
                    )
                )
        except IntegrityError:
            return False
        return True

    def count_session_summaries(self, user_id: str, session_id: str) -> int:
        stmt = select(func.count()).select_from(artifacts_t).where(
            artifacts_t.c.user_id == user_id,
            artifacts_t.c.session_id == session_id,
            artifacts_t.c.type == SESSION_SUMMARY_ARTIFACT_TYPE,
        )
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())
