from __future__ import annotations

from typing import Any, Mapping

from pydantic import TypeAdapter, ValidationError

from app.guide.domain.models import (
    EVENT_TYPES,
    SUBTITLE_ONE_SENTENCE,
    AllowLists,
    ContextEvent,
    EventOutcome,
    SuggestionEvent,
)


DROP_NOT_AN_OBJECT = "not_an_object"
DROP_UNKNOWN_TYPE = "unknown_type"
DROP_SCHEMA_INVALID = "schema_invalid"
DROP_SUBTITLE_ONE_SENTENCE = "subtitle_one_sentence"
DROP_EVIDENCE_NOT_ALLOWED = "evidence_ids_not_allowed"
DROP_ACTION_NOT_ENABLED = "action_not_enabled"

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ContextEvent)


def _schema_drop_reason(exc: ValidationError) -> str:
    for error in exc.errors():
        loc = error.get("loc") or ()
        if "subtitle" in loc and SUBTITLE_ONE_SENTENCE in str(error.get("msg", "")):
            return DROP_SUBTITLE_ONE_SENTENCE
    return DROP_SCHEMA_INVALID


def validate_event(allow_lists: AllowLists, raw: Any) -> EventOutcome:
    """
    Pure check of one decoded stream object: discriminator first, then the
    variant schema, then the allow-lists.
    """
    if not isinstance(raw, Mapping):
        return EventOutcome(reason=DROP_NOT_AN_OBJECT)
    event_type = raw.get("type")
    if not isinstance(event_type, str) or event_type not in EVENT_TYPES:
        return EventOutcome(reason=DROP_UNKNOWN_TYPE)

    try:
        event = _EVENT_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        return EventOutcome(reason=_schema_drop_reason(exc))

    if isinstance(event, SuggestionEvent):
        if any(eid not in allow_lists.evidence_ids for eid in event.evidence_ids):
            return EventOutcome(reason=DROP_EVIDENCE_NOT_ALLOWED)
        if allow_lists.action_types is not None and event.action.type not in allow_lists.action_types:
            return EventOutcome(reason=DROP_ACTION_NOT_ENABLED)

    return EventOutcome(event=event)


class EventValidator:
    """``validate_event`` bound to one set of allow-lists."""

    def __init__(self, allow_lists: AllowLists):
        self.allow_lists = allow_lists

    def __call__(self, raw: Any) -> EventOutcome:
        return validate_event(self.allow_lists, raw)
