from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


NormalizedAction = Literal[
    "read_scripture",
    "checkin",
    "reading_plan",
    "prayer",
    "resume_guide_conversation",
    "new_guide_conversation",
    "reflect_journal",
]

GuideActionType = Literal[
    "continue_reading",
    "open_passage",
    "start_short_reading",
    "start_checkin",
    "open_conversation",
    "open_conversation_summary",
]

Grounding = Literal[
    "reading_anchor",
    "highlight_anchor",
    "note_anchor",
    "life_context",
    "conversation_summary",
    "plan_progress",
]

SUBTITLE_ONE_SENTENCE = "subtitle must be one sentence"

_SENTENCE_END = re.compile(r"[.!?](\s|$)")
# BOOK:CHAPTER with optional :VERSE or :VERSE-VERSE, e.g. PSA:51, JHN:6:1-14
_REF_KEY = re.compile(r"^([1-3]?[A-Za-z]{2,3}):(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?$")

_READ_SCRIPTURE_ACTIONS = {"open_passage", "continue_reading", "start_short_reading"}
_OPEN_CONVERSATION_ACTIONS = {"new_guide_conversation", "reading_plan", "prayer", "reflect_journal"}


def is_single_sentence(text: str) -> bool:
    trimmed = text.strip()
    if not trimmed:
        return False
    return len(_SENTENCE_END.findall(trimmed)) <= 1


@dataclass(frozen=True)
class AllowLists:
    """What model output may reference. ``action_types=None`` means unrestricted."""

    evidence_ids: frozenset[str] = frozenset()
    action_types: frozenset[str] | None = None


class SuggestionAction(BaseModel):
    model_config = ConfigDict(strict=True)

    type: GuideActionType
    params: dict[str, Any]


class SuggestionEvent(BaseModel):
    model_config = ConfigDict(strict=True)

    type: Literal["suggestion"]
    rank: int = Field(ge=1, le=5)
    title: str = Field(min_length=1, max_length=120)
    subtitle: str = Field(min_length=1, max_length=240)
    normalized_action: NormalizedAction
    grounding: Grounding
    target_label: str = Field(min_length=1, max_length=180)
    action: SuggestionAction
    evidence_ids: list[Annotated[str, Field(min_length=1)]] = Field(min_length=1, max_length=10)
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("subtitle")
    @classmethod
    def _one_sentence(cls, value: str) -> str:
        if not is_single_sentence(value):
            raise ValueError(SUBTITLE_ONE_SENTENCE)
        return value

    @model_validator(mode="after")
    def _action_matches_normalized_action(self) -> "SuggestionEvent":
        action_type = self.action.type
        params = self.action.params
        normalized = self.normalized_action

        if normalized == "read_scripture":
            if action_type not in _READ_SCRIPTURE_ACTIONS:
                raise ValueError("action.type must map to read_scripture")
            ref_key = params.get("ref_key")
            if not isinstance(ref_key, str) or not ref_key.strip():
                raise ValueError("ref_key is required")
            if not _REF_KEY.match(ref_key.strip()):
                raise ValueError("ref_key must be BOOK:CHAPTER, e.g. PSA:51")
        elif normalized == "checkin":
            if action_type != "start_checkin":
                raise ValueError("action.type must map to checkin")
        elif normalized == "resume_guide_conversation":
            if action_type != "open_conversation_summary":
                raise ValueError("action.type must map to resume_guide_conversation")
            artifact_id = params.get("artifact_id")
            if not isinstance(artifact_id, str) or not artifact_id.strip():
                raise ValueError("artifact_id is required")
        elif normalized in _OPEN_CONVERSATION_ACTIONS:
            if action_type != "open_conversation":
                raise ValueError("action.type must map to normalized_action")
        return self


class DoneEvent(BaseModel):
    type: Literal["done"]


ContextEvent = Annotated[Union[SuggestionEvent, DoneEvent], Field(discriminator="type")]

EVENT_TYPES = frozenset({"suggestion", "done"})


@dataclass(frozen=True)
class EventOutcome:
    event: SuggestionEvent | DoneEvent | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.event is not None


class ChatMessageIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    actions: Any = None
    timestamp: Optional[str] = None


class ChatTranscript(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    started_at: Optional[datetime] = None
    ended_at: datetime
    messages: list[ChatMessageIn] = Field(default_factory=list, max_length=500)


@dataclass(frozen=True)
class SaveTranscriptResult:
    saved: bool
    session_id: str | None = None
    title: str | None = None
    reason: str | None = None


@dataclass
class MemoryNote:
    text: str
    keywords: list[str] = field(default_factory=list)
    created_at_iso: str | None = None
    expires_at_iso: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "text": self.text,
            "keywords": list(self.keywords),
            "createdAtISO": self.created_at_iso,
        }
        if self.expires_at_iso:
            data["expiresAtISO"] = self.expires_at_iso
        return data
