from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from app.guide.adapters.inference_adapter import ChatModel, InferenceError
from app.guide.adapters.repos_sql import ChatRepoSQL
from app.guide.domain.config import SummaryConfig
from app.guide.services.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from app.logging import get_logger
from app.models import SESSION_SUMMARY_ARTIFACT_TYPE

logger = get_logger(__name__)

SHORT_USER_TURN_CHARS = 10
FALLBACK_HEADLINE_CHARS = 160
FALLBACK_EXCERPT_CHARS = 200
FALLBACK_EXCERPT_TURNS = 4


@dataclass
class SessionSummary:
    one_sentence_summary: str
    summary: str
    topics: list[str] = field(default_factory=list)
    scripture_refs: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    user_expressed_concerns: list[str] = field(default_factory=list)
    suggested_resume_prompt: str = ""
    used_fallback: bool = False


def prepare_turns(turns: Sequence[tuple[str, str]], max_turns: int) -> list[tuple[str, str]]:
    """Last ``max_turns`` turns without short user acknowledgements."""
    capped = list(turns)[-max_turns:]
    return [
        (role, content)
        for role, content in capped
        if role == "assistant" or len(content) > SHORT_USER_TURN_CHARS
    ]


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_summary(raw: str) -> SessionSummary | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    summary = SessionSummary(
        one_sentence_summary=_str(data.get("oneSentenceSummary")),
        summary=_str(data.get("summary")),
        topics=_str_list(data.get("topics")),
        scripture_refs=_str_list(data.get("scriptureRefs")),
        open_questions=_str_list(data.get("openQuestions")),
        user_expressed_concerns=_str_list(data.get("userExpressedConcerns"))[:3],
        suggested_resume_prompt=_str(data.get("suggestedResumePrompt")),
    )
    if not summary.summary and not summary.one_sentence_summary:
        return None
    return summary


def fallback_summary(turns: Sequence[tuple[str, str]]) -> SessionSummary:
    first_user = next((c.strip() for r, c in turns if r == "user" and c.strip()), "")
    headline = first_user[:FALLBACK_HEADLINE_CHARS] or "Conversation"
    excerpts = [
        f"{role.capitalize()}: {content.strip()[:FALLBACK_EXCERPT_CHARS]}"
        for role, content in turns[:FALLBACK_EXCERPT_TURNS]
        if content.strip()
    ]
    return SessionSummary(
        one_sentence_summary=headline,
        summary="\n".join(excerpts) or headline,
        used_fallback=True,
    )


class SessionSummaryArtifactGenerator:
    """
    Builds and stores the ``conversation_session_summary`` artifact for one
    session. The caller checks that none exists yet; a lost race is absorbed
    by the unique index and reported as not created.
    """

    def __init__(self, repo: ChatRepoSQL, client: ChatModel | None, config: SummaryConfig | None = None):
        self.repo = repo
        self.client = client
        self.config = config or SummaryConfig()

    def generate(
        self,
        session_id: str,
        turns: Sequence[tuple[str, str]],
        *,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> SessionSummary:
        prepared = prepare_turns(turns, self.config.max_turns)
        if not prepared:
            return fallback_summary(list(turns))
        if self.client is None:
            return fallback_summary(prepared)

        now_iso = datetime.now(timezone.utc).isoformat()
        prompt = build_summary_prompt(
            session_id,
            started_at.isoformat() if started_at else now_iso,
            ended_at.isoformat() if ended_at else now_iso,
            prepared,
        )
        try:
            raw = self.client.complete(
                [
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                json_mode=True,
            )
        except InferenceError as exc:
            logger.warning("session_summary_fallback", session_id=session_id, error=str(exc))
            return fallback_summary(prepared)

        parsed = parse_summary(raw)
        if parsed is None:
            logger.warning("session_summary_fallback", session_id=session_id, error="unparseable_model_output")
            return fallback_summary(prepared)
        return parsed

    def create(
        self,
        user_id: str,
        session_id: str,
        turns: Sequence[tuple[str, str]],
        metadata: Mapping[str, Any] | None = None,
        *,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> bool:
        summary = self.generate(session_id, turns, started_at=started_at, ended_at=ended_at)
        content = summary.summary or summary.one_sentence_summary
        artifact_metadata = {
            **dict(metadata or {}),
            "turnCount": len(prepare_turns(turns, self.config.max_turns)),
            "openQuestions": summary.open_questions,
            "userExpressedConcerns": summary.user_expressed_concerns,
            "suggestedResumePrompt": summary.suggested_resume_prompt,
            "usedFallback": summary.used_fallback,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }
        created = self.repo.create_artifact(
            user_id=user_id,
            session_id=session_id,
            scope="private",
            type=SESSION_SUMMARY_ARTIFACT_TYPE,
            title=summary.one_sentence_summary or None,
            content=content,
            content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            tags=summary.topics,
            scripture_refs=summary.scripture_refs,
            metadata=artifact_metadata,
        )
        if not created:
            logger.info("session_summary_exists", user_id=user_id, session_id=session_id)
        return created
