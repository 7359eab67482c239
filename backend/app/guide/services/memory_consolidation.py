from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from app.guide.adapters.inference_adapter import ChatModel, InferenceError
from app.guide.adapters.repos_sql import ChatRepoSQL
from app.guide.domain.config import ConsolidationConfig
from app.guide.domain.models import MemoryNote
from app.guide.services.prompts import CONSOLIDATION_SYSTEM_PROMPT, build_consolidation_prompt
from app.logging import get_logger

logger = get_logger(__name__)

MEMORY_STATE_SCHEMA_VERSION = "guide.user_memory_state.v1"

NOTE_MAX_CHARS = 400
KEYWORD_MAX_CHARS = 24
KEYWORDS_PER_NOTE = 8
PROMOTION_WINDOW = 240

_SENSITIVE_MARKERS = (
    "api key", "password", "secret", "token", "bearer ",
    "ssn", "social security", "credit card", "bank account",
    "address:", "phone:", "diagnosis", "medication",
)
_INSTRUCTION_MARKERS = ("system prompt", "ignore previous", "developer message")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def looks_sensitive(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def looks_instructional(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _INSTRUCTION_MARKERS)


def is_storable(text: str) -> bool:
    return bool(text) and len(text) <= NOTE_MAX_CHARS and not looks_sensitive(text) and not looks_instructional(text)


def normalize_keyword(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    snake = _NON_ALNUM.sub("_", value.strip().lower()).strip("_")
    return snake[:KEYWORD_MAX_CHARS] or None


def normalize_keywords(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for value in values:
        keyword = normalize_keyword(value)
        if keyword and keyword not in out:
            out.append(keyword)
        if len(out) >= KEYWORDS_PER_NOTE:
            break
    return out


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_unexpired(note: MemoryNote, now: datetime) -> bool:
    expires = _parse_iso(note.expires_at_iso)
    return expires is None or expires > now


def coerce_note(value: Any, now_iso: str) -> MemoryNote | None:
    if not isinstance(value, Mapping):
        return None
    text = value.get("text").strip() if isinstance(value.get("text"), str) else ""
    if not text:
        return None
    created = value.get("createdAtISO")
    expires = value.get("expiresAtISO")
    return MemoryNote(
        text=text,
        keywords=normalize_keywords(value.get("keywords")),
        created_at_iso=created if isinstance(created, str) and created else now_iso,
        expires_at_iso=expires if isinstance(expires, str) and expires else None,
    )


def dedupe_notes(notes: Iterable[MemoryNote], limit: int) -> list[MemoryNote]:
    """Storable notes, first occurrence per normalized text wins."""
    seen: set[str] = set()
    out: list[MemoryNote] = []
    for note in notes:
        text = note.text.strip()
        if not is_storable(text):
            continue
        key = normalize_text(text)
        if key in seen:
            continue
        seen.add(key)
        out.append(
            MemoryNote(
                text=text,
                keywords=normalize_keywords(note.keywords),
                created_at_iso=note.created_at_iso,
                expires_at_iso=note.expires_at_iso,
            )
        )
    return out[:limit]


def _valid_indices(value: Any, upper: int) -> list[int]:
    if not isinstance(value, list):
        return []
    return [n for n in value if isinstance(n, int) and not isinstance(n, bool) and 0 <= n < upper]


def validate_model_notes(
    items: Sequence[Any],
    *,
    global_count: int,
    session_count: int,
    max_out: int,
    now_iso: str,
) -> list[MemoryNote]:
    """Keep model notes that are storable, cite at least one input note and are not duplicates."""
    seen: set[str] = set()
    out: list[MemoryNote] = []
    for item in list(items)[:max_out]:
        if not isinstance(item, Mapping):
            continue
        text = item.get("text").strip() if isinstance(item.get("text"), str) else ""
        if not is_storable(text):
            continue
        sources = item.get("sources") if isinstance(item.get("sources"), Mapping) else {}
        if not _valid_indices(sources.get("globalIdx"), global_count) and not _valid_indices(
            sources.get("sessionIdx"), session_count
        ):
            continue
        key = normalize_text(text)
        if key in seen:
            continue
        seen.add(key)
        out.append(MemoryNote(text=text, keywords=normalize_keywords(item.get("keywords")), created_at_iso=now_iso))
    return out


class MemoryConsolidator:
    """
    Folds a finished conversation's session notes into the user's durable
    memory, then deletes those notes. A second call for the same
    conversation finds no notes and returns empty stats without writing.
    """

    def __init__(self, repo: ChatRepoSQL, client: ChatModel | None, config: ConsolidationConfig | None = None):
        self.repo = repo
        self.client = client
        self.config = config or ConsolidationConfig()

    def consolidate(self, user_id: str, conversation_id: str) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        now_iso = now.isoformat()

        session_notes = [
            MemoryNote(
                text=row["text"].strip(),
                keywords=normalize_keywords(row["keywords"]),
                created_at_iso=row["created_at"].isoformat() if row["created_at"] else now_iso,
                expires_at_iso=row["expires_at"].isoformat() if row["expires_at"] else None,
            )
            for row in self.repo.list_session_notes(user_id, conversation_id, limit=self.config.max_session_notes)
            if isinstance(row["text"], str) and row["text"].strip()
        ]
        if not session_notes:
            return {}

        unexpired = [n for n in session_notes if is_unexpired(n, now)]
        durable = [n for n in unexpired if not n.expires_at_iso]
        ttl = [n for n in unexpired if n.expires_at_iso]

        global_in = [
            note
            for note in (coerce_note(raw, now_iso) for raw in self.repo.get_user_memory_notes(user_id))
            if note is not None
        ]

        merged = self._model_merge(global_in, durable, now_iso)
        used_fallback = merged is None
        if merged is None:
            merged = dedupe_notes([*global_in, *durable][-self.config.max_global_notes:], self.config.max_global_notes)

        if ttl:
            merged = dedupe_notes([*merged, *ttl][-PROMOTION_WINDOW:], self.config.max_global_notes)

        self.repo.replace_memory_and_clear_notes(
            user_id=user_id,
            conversation_id=conversation_id,
            notes=[n.to_json() for n in merged],
            schema_version=MEMORY_STATE_SCHEMA_VERSION,
        )

        stats = {
            "sessionNotesIn": len(session_notes),
            "sessionNotesInUnexpired": len(unexpired),
            "globalNotesIn": len(global_in),
            "globalNotesOut": len(merged),
            "usedFallback": used_fallback,
        }
        logger.info("memory_consolidated", user_id=user_id, conversation_id=conversation_id, **stats)
        return stats

    def _model_merge(
        self,
        global_in: Sequence[MemoryNote],
        durable: Sequence[MemoryNote],
        now_iso: str,
    ) -> list[MemoryNote] | None:
        """Validated model output, or None when the fallback merge has to be used."""
        if self.client is None:
            return None
        prompt = build_consolidation_prompt(
            [n.to_json() for n in global_in],
            [n.to_json() for n in durable],
            now_iso,
        )
        try:
            raw = self.client.complete(
                [
                    {"role": "system", "content": CONSOLIDATION_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                model=self.config.model,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
                json_mode=True,
            )
        except InferenceError as exc:
            logger.warning("memory_consolidation_fallback", error=str(exc))
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("memory_consolidation_fallback", error="invalid_json")
            return None
        items = data.get("globalNotes") if isinstance(data, dict) else None
        if not isinstance(items, list):
            logger.warning("memory_consolidation_fallback", error="missing_global_notes")
            return None

        return validate_model_notes(
            items,
            global_count=len(global_in),
            session_count=len(durable),
            max_out=self.config.max_output_notes,
            now_iso=now_iso,
        )
