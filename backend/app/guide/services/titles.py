from __future__ import annotations

import re
from typing import Sequence

from app.guide.adapters.inference_adapter import ChatModel, InferenceError
from app.guide.domain.config import TitleConfig
from app.guide.services.prompts import TITLE_SYSTEM_PROMPT, build_title_prompt
from app.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "Recent conversation"
TITLE_MAX_WORDS = 5
TITLE_MIN_WORDS = 3
TITLE_MAX_CHARS = 200

_EDGE_QUOTES = re.compile(r"^[\"'`]+|[\"'`]+$")


def fallback_title(turns: Sequence[tuple[str, str]]) -> str:
    first_user = next((content for role, content in turns if role == "user" and content.strip()), "")
    words = first_user.split()[:TITLE_MAX_WORDS]
    if len(words) >= TITLE_MIN_WORDS:
        return " ".join(words)[:TITLE_MAX_CHARS]
    return DEFAULT_TITLE


def normalize_title(raw: str, fallback: str) -> str:
    cleaned = _EDGE_QUOTES.sub("", raw.strip())
    words = cleaned.split()[:TITLE_MAX_WORDS]
    if len(words) >= TITLE_MIN_WORDS:
        return " ".join(words)[:TITLE_MAX_CHARS]
    return fallback


class SessionTitler:
    """Short list title for a chat session. Falls back to a deterministic title; never raises."""

    def __init__(self, client: ChatModel | None, config: TitleConfig | None = None):
        self.client = client
        self.config = config or TitleConfig()

    def title(self, kind: str, turns: Sequence[tuple[str, str]]) -> str:
        cleaned = [(role, content.strip()) for role, content in turns if content.strip()]
        cleaned = cleaned[: self.config.max_turns]
        fallback = fallback_title(cleaned)

        if self.client is None:
            return fallback

        try:
            raw = self.client.complete(
                [
                    {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                    {"role": "user", "content": build_title_prompt(kind, cleaned)},
                ],
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except InferenceError as exc:
            logger.warning("session_title_fallback", kind=kind, error=str(exc))
            return fallback
        return normalize_title(raw, fallback)
