from __future__ import annotations

from datetime import timezone
from typing import Any, Sequence

from app.guide.adapters.repos_sql import ChatRepoSQL
from app.guide.domain.models import ChatTranscript, SaveTranscriptResult
from app.guide.services.titles import SessionTitler
from app.logging import get_logger

logger = get_logger(__name__)

REASON_TOO_SHORT = "too_short"


def normalize_messages(transcript: ChatTranscript) -> list[dict[str, Any]]:
    """Transcript order; messages with blank content are dropped."""
    return [
        {
            "role": m.role,
            "content": m.content,
            "actions": m.actions,
            "client_timestamp": m.timestamp,
        }
        for m in transcript.messages
        if m.content.strip()
    ]


def has_substance(messages: Sequence[dict[str, Any]]) -> bool:
    if len(messages) < 2:
        return False
    return any(m["role"] == "user" and m["content"].strip() for m in messages)


def _aware(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TranscriptStore:
    def __init__(self, repo: ChatRepoSQL, titler: SessionTitler):
        self.repo = repo
        self.titler = titler

    def save(self, user_id: str, kind: str, transcript: ChatTranscript) -> SaveTranscriptResult:
        """
        Persist the transcript under (user_id, kind, session_id), replacing any
        earlier copy. Transcripts without substance write nothing.
        """
        messages = normalize_messages(transcript)
        if not has_substance(messages):
            return SaveTranscriptResult(saved=False, reason=REASON_TOO_SHORT)

        ended_at = _aware(transcript.ended_at)
        started_at = _aware(transcript.started_at) if transcript.started_at else ended_at

        title = self.titler.title(kind, [(m["role"], m["content"]) for m in messages])

        self.repo.upsert_session_with_messages(
            user_id=user_id,
            kind=kind,
            session_id=transcript.session_id,
            title=title,
            started_at=started_at,
            ended_at=ended_at,
            messages=messages,
        )
        logger.info(
            "chat_transcript_saved",
            user_id=user_id,
            kind=kind,
            session_id=transcript.session_id,
            message_count=len(messages),
        )
        return SaveTranscriptResult(saved=True, session_id=transcript.session_id, title=title)
