from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterator, Mapping

from fastapi import Depends
from sqlalchemy.engine import Engine

from app.config import settings
from app.deps import (
    get_chat_model,
    get_consolidation_config,
    get_engine,
    get_guide_model_config,
    get_redis,
    get_summary_config,
    get_title_config,
)
from app.guide.adapters.cache import (
    get_cached_suggestions,
    make_suggestions_cache_key,
    set_cached_suggestions,
)
from app.guide.adapters.inference_adapter import ChatModel, InferenceError
from app.guide.adapters.repos_sql import ChatRepoSQL
from app.guide.domain.config import ConsolidationConfig, ModelConfig, SummaryConfig, TitleConfig
from app.guide.domain.models import ChatTranscript
from app.guide.services.allow_lists import extract_allow_lists
from app.guide.services.chat_end import ChatEndFlow
from app.guide.services.compaction import compact_context_payload
from app.guide.services.events import EventValidator
from app.guide.services.memory_consolidation import MemoryConsolidator, normalize_keywords
from app.guide.services.session_summary import SessionSummaryArtifactGenerator
from app.guide.services.stream_session import StreamSession
from app.guide.services.titles import SessionTitler
from app.guide.services.trace_logger import get_trace_logger, new_trace_id
from app.guide.services.transcripts import TranscriptStore
from app.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GuideServiceError(Exception):
    status_code: int
    detail: str
    body: dict[str, Any] | None = field(default=None, compare=False)


def _provider_error(exc: InferenceError, correlation_id: str) -> GuideServiceError:
    logger.error("guide_turn_failed", correlation_id=correlation_id, error=str(exc))
    return GuideServiceError(
        status_code=502,
        detail="model_provider_error",
        body={
            "error": "Failed to generate guide suggestions",
            "details": str(exc),
            "correlation_id": correlation_id,
        },
    )


def apply_provider_overrides(config: ModelConfig, overrides: Mapping[str, Any] | None) -> ModelConfig:
    """Per-request model, temperature and max_tokens on top of the configured defaults."""
    if not overrides:
        return config
    changes = {
        key: overrides[key]
        for key in ("model", "temperature", "max_tokens")
        if overrides.get(key) is not None
    }
    return replace(config, **changes)


@dataclass
class SuggestionStream:
    lines: Iterator[dict[str, Any]]
    cache_hit: bool
    correlation_id: str | None = None


class GuideService:
    def __init__(
        self,
        client: ChatModel | None,
        model_config: ModelConfig,
        redis_client: Any = None,
        *,
        cache_ttl_sec: int = 8 * 60 * 60,
        trace_dir: str | None = None,
    ):
        self.client = client
        self.model_config = model_config
        self.redis = redis_client
        self.cache_ttl_sec = cache_ttl_sec
        self.trace_dir = trace_dir

    def _session(
        self,
        payload: Any,
        correlation_id: str,
        model_config: ModelConfig | None = None,
    ) -> tuple[StreamSession, Any]:
        if self.client is None:
            raise GuideServiceError(status_code=500, detail="openai_api_key_not_configured")
        compacted = compact_context_payload(payload)
        validator = EventValidator(extract_allow_lists(compacted))
        session = StreamSession(
            self.client,
            model_config or self.model_config,
            validator,
            trace=get_trace_logger(correlation_id, self.trace_dir),
        )
        return session, compacted

    def context_run(
        self,
        payload: Any,
        user_first_name: str | None = None,
        *,
        provider_overrides: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        correlation_id = new_trace_id()
        model_config = apply_provider_overrides(self.model_config, provider_overrides)
        session, compacted = self._session(payload, correlation_id, model_config)
        try:
            result = session.run(compacted, user_first_name=user_first_name)
        except InferenceError as exc:
            raise _provider_error(exc, correlation_id) from exc

        return {
            "raw_model_text": result.raw_model_text,
            "parsed_events": [event.model_dump() for event in result.events],
            "debug_summary": result.summary.to_json(),
        }

    def stream_suggestions(
        self,
        user_id: str,
        payload: Any,
        *,
        user_first_name: str | None = None,
        debug: bool = False,
        force_refresh: bool = False,
    ) -> SuggestionStream:
        """
        NDJSON lines for the suggestions endpoint. The first line is pulled
        before returning so a provider failure can still become an error
        response.
        """
        correlation_id = new_trace_id()
        session, compacted = self._session(payload, correlation_id)
        cache_key = make_suggestions_cache_key(user_id, session.validator.allow_lists.action_types)

        if not force_refresh:
            cached = get_cached_suggestions(self.redis, cache_key)
            if cached is not None:
                return SuggestionStream(lines=iter(cached), cache_hit=True)

        lines = self._live_lines(session, compacted, user_first_name, cache_key, debug, correlation_id)
        try:
            first = next(lines, None)
        except InferenceError as exc:
            raise _provider_error(exc, correlation_id) from exc
        return SuggestionStream(
            lines=_primed(first, lines),
            cache_hit=False,
            correlation_id=correlation_id,
        )

    def _live_lines(
        self,
        session: StreamSession,
        compacted: Any,
        user_first_name: str | None,
        cache_key: str,
        debug: bool,
        correlation_id: str,
    ) -> Iterator[dict[str, Any]]:
        emitted: list[dict[str, Any]] = []
        events = session.iter_events(compacted, user_first_name=user_first_name)
        try:
            for event in events:
                line = event.model_dump()
                emitted.append(line)
                yield line
        except InferenceError as exc:
            if not emitted:
                raise
            # status line is already sent; end the body early
            logger.error("guide_stream_interrupted", correlation_id=correlation_id, error=str(exc))
            return
        finally:
            events.close()

        if debug:
            yield {"type": "debug", "scope": "guide_start", **session.summary.to_json()}
        if session.summary.has_done:
            set_cached_suggestions(self.redis, cache_key, emitted, self.cache_ttl_sec)


def _primed(first: dict[str, Any] | None, rest: Iterator[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    if first is not None:
        yield first
    yield from rest


class ChatService:
    def __init__(self, repo: ChatRepoSQL, end_flow: ChatEndFlow):
        self.repo = repo
        self.end_flow = end_flow

    def start(
        self,
        user_id: str,
        conversation_id: str | None = None,
        entrypoint: str = "other",
        mode: str = "general",
    ) -> dict[str, Any]:
        conversation_id = conversation_id or str(uuid.uuid4())
        created = self.repo.create_conversation_pointer(
            user_id=user_id,
            conversation_id=conversation_id,
            entrypoint=entrypoint,
            mode=mode,
        )
        return {"conversation_id": conversation_id, "created": created}

    def add_note(
        self,
        user_id: str,
        conversation_id: str,
        text: str,
        keywords: list[str] | None = None,
        expires_at: datetime | None = None,
    ) -> dict[str, Any]:
        text = text.strip()
        if not text:
            raise GuideServiceError(status_code=400, detail="empty_note_not_allowed")
        note_id = self.repo.add_session_note(
            user_id=user_id,
            conversation_id=conversation_id,
            text=text,
            keywords=normalize_keywords(keywords or []),
            expires_at=expires_at,
        )
        return {"note_id": note_id}

    def end(self, user_id: str, conversation_id: str, transcript: ChatTranscript) -> dict[str, Any]:
        return self.end_flow.end(user_id, conversation_id, transcript).to_json()

    def list_sessions(self, user_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        items = self.repo.list_sessions(user_id, limit=limit, offset=offset)
        return {
            "items": [
                {
                    **item,
                    "started_at": item["started_at"].isoformat(),
                    "ended_at": item["ended_at"].isoformat(),
                }
                for item in items
            ]
        }

    def get_session(self, user_id: str, session_id: str) -> dict[str, Any]:
        transcript = self.repo.get_session_transcript(user_id, session_id)
        if transcript is None:
            raise GuideServiceError(status_code=404, detail="session_not_found")
        transcript["started_at"] = transcript["started_at"].isoformat()
        transcript["ended_at"] = transcript["ended_at"].isoformat()
        return transcript


def build_chat_service(
    engine: Engine,
    client: ChatModel | None,
    *,
    title_config: TitleConfig | None = None,
    summary_config: SummaryConfig | None = None,
    consolidation_config: ConsolidationConfig | None = None,
) -> ChatService:
    repo = ChatRepoSQL(engine)
    end_flow = ChatEndFlow(
        repo,
        TranscriptStore(repo, SessionTitler(client, title_config)),
        SessionSummaryArtifactGenerator(repo, client, summary_config),
        MemoryConsolidator(repo, client, consolidation_config),
    )
    return ChatService(repo, end_flow)


def get_guide_service(
    client: ChatModel | None = Depends(get_chat_model),
    model_config: ModelConfig = Depends(get_guide_model_config),
    redis_client: Any = Depends(get_redis),
) -> GuideService:
    return GuideService(
        client,
        model_config,
        redis_client,
        cache_ttl_sec=settings.guide_suggestions_cache_ttl_sec,
        trace_dir=settings.guide_trace_dir,
    )


def get_chat_service(
    engine: Engine = Depends(get_engine),
    client: ChatModel | None = Depends(get_chat_model),
    title_config: TitleConfig = Depends(get_title_config),
    summary_config: SummaryConfig = Depends(get_summary_config),
    consolidation_config: ConsolidationConfig = Depends(get_consolidation_config),
) -> ChatService:
    return build_chat_service(
        engine,
        client,
        title_config=title_config,
        summary_config=summary_config,
        consolidation_config=consolidation_config,
    )
