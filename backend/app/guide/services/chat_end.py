from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app.guide.adapters.repos_sql import ChatRepoSQL
from app.guide.domain.models import ChatTranscript
from app.guide.services.memory_consolidation import MemoryConsolidator
from app.guide.services.session_summary import SessionSummaryArtifactGenerator
from app.guide.services.transcripts import TranscriptStore, has_substance, normalize_messages
from app.logging import get_logger

logger = get_logger(__name__)

GUIDE_KIND = "guide"


@dataclass
class ChatEndResult:
    saved_transcript: bool
    session_summary_created: bool
    consolidated: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "success": True,
            "savedTranscript": self.saved_transcript,
            "sessionSummaryCreated": self.session_summary_created,
            "consolidated": self.consolidated,
        }


class ChatEndFlow:
    """
    Ends a guide conversation: save the transcript, create the session
    summary once, consolidate memory, then drop the conversation pointer.
    Safe to repeat for the same conversation.
    """

    def __init__(
        self,
        repo: ChatRepoSQL,
        transcripts: TranscriptStore,
        summaries: SessionSummaryArtifactGenerator,
        consolidator: MemoryConsolidator,
    ):
        self.repo = repo
        self.transcripts = transcripts
        self.summaries = summaries
        self.consolidator = consolidator

    def end(self, user_id: str, conversation_id: str, transcript: ChatTranscript) -> ChatEndResult:
        saved = self.transcripts.save(user_id, GUIDE_KIND, transcript)

        summary_created = False
        messages = normalize_messages(transcript)
        if has_substance(messages) and not self.repo.session_summary_exists(user_id, conversation_id):
            summary_created = self.summaries.create(
                user_id,
                conversation_id,
                [(m["role"], m["content"]) for m in messages],
                metadata={"conversationId": conversation_id, "sessionId": transcript.session_id},
                started_at=transcript.started_at,
                ended_at=transcript.ended_at,
            )

        consolidated = self.consolidator.consolidate(user_id, conversation_id)
        self._drop_pointer(conversation_id)

        return ChatEndResult(
            saved_transcript=saved.saved,
            session_summary_created=summary_created,
            consolidated=consolidated,
        )

    def _drop_pointer(self, conversation_id: str) -> None:
        try:
            self.repo.delete_conversation_pointer(conversation_id)
        except SQLAlchemyError as exc:
            logger.warning("conversation_pointer_cleanup_failed", conversation_id=conversation_id, error=str(exc))
