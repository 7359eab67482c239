from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping

from app.guide.adapters.inference_adapter import ChatModel, InferenceError
from app.guide.domain.config import ModelConfig
from app.guide.domain.models import DoneEvent, SuggestionEvent
from app.guide.services.events import EventValidator
from app.guide.services.prompts import GUIDE_SYSTEM_PROMPT
from app.guide.services.trace_logger import TraceLogger
from app.logging import get_logger

logger = get_logger(__name__)


DROP_INVALID_JSON = "invalid_json"
DROP_MAX_SUGGESTIONS = "max_suggestions_reached"
DROP_INVALID_SUGGESTION_COUNT = "invalid_suggestion_count"

MIN_SUGGESTIONS = 3
MAX_SUGGESTIONS = 5

GuideEvent = SuggestionEvent | DoneEvent


class NdjsonLineAssembler:
    """
    Splits streamed text into complete lines. A trailing partial line stays
    buffered until a later chunk terminates it.
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split("\n")
        return [line.strip() for line in complete if line.strip()]

    def flush(self) -> str | None:
        """End of stream: the remaining text is a complete final line."""
        tail = self._buffer.strip()
        self._buffer = ""
        return tail or None

    def discard(self) -> None:
        self._buffer = ""


@dataclass
class StreamSummary:
    drop_reasons: Counter = field(default_factory=Counter)
    accepted_suggestions: int = 0
    has_done: bool = False
    used_fallback: bool = False

    @property
    def dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def to_json(self) -> dict[str, Any]:
        return {
            "dropped": self.dropped,
            "drop_reasons": dict(self.drop_reasons),
            "accepted_suggestions": self.accepted_suggestions,
            "used_fallback": self.used_fallback,
        }


@dataclass
class StreamResult:
    raw_model_text: str
    events: list[GuideEvent]
    summary: StreamSummary


def build_user_message(payload: Any, user_first_name: str | None) -> str:
    body = dict(payload) if isinstance(payload, Mapping) else {"context": payload}
    name = (user_first_name or "").strip()
    body["user"] = {"first_name": name or None}
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"), default=str)


class StreamSession:
    """
    One streamed guide turn: the model's NDJSON output is assembled into
    lines, decoded, validated and handed out in arrival order.

    State (raw text, drop counts) is per instance; create one per turn.
    """

    def __init__(
        self,
        client: ChatModel,
        model_config: ModelConfig,
        validator: EventValidator,
        *,
        system_prompt: str = GUIDE_SYSTEM_PROMPT,
        trace: TraceLogger | None = None,
    ):
        self.client = client
        self.model_config = model_config
        self.validator = validator
        self.system_prompt = system_prompt
        self.trace = trace
        self.summary = StreamSummary()
        self._raw_parts: list[str] = []

    @property
    def raw_model_text(self) -> str:
        return "".join(self._raw_parts)

    def iter_events(self, payload: Any, *, user_first_name: str | None = None) -> Iterator[GuideEvent]:
        """
        Yield accepted events. Closing the iterator early closes the upstream
        response and drops any partial line without parsing it.
        """
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": build_user_message(payload, user_first_name)},
        ]
        self._trace(
            "request",
            {"model": self.model_config.model, "max_tokens": self.model_config.max_tokens},
        )

        deltas = self.client.stream(
            messages,
            model=self.model_config.model,
            temperature=self.model_config.temperature,
            max_tokens=self.model_config.max_tokens,
        )
        assembler = NdjsonLineAssembler()
        finished = False
        try:
            for delta in deltas:
                self._raw_parts.append(delta)
                for line in assembler.feed(delta):
                    event = self._handle_line(line)
                    if event is not None:
                        yield event
                    if self.summary.has_done:
                        finished = True
                        return

            tail = assembler.flush()
            if tail is not None:
                event = self._handle_line(tail)
                if event is not None:
                    yield event
            finished = True
        except InferenceError as exc:
            finished = True
            self._trace_error(str(exc))
            raise
        finally:
            close = getattr(deltas, "close", None)
            if callable(close):
                close()
            if not finished:
                assembler.discard()
                logger.info("guide_stream_cancelled", accepted=self.summary.accepted_suggestions)
            self._finish()

    def run(
        self,
        payload: Any,
        on_event: Callable[[GuideEvent], None] | None = None,
        *,
        user_first_name: str | None = None,
    ) -> StreamResult:
        events: list[GuideEvent] = []
        for event in self.iter_events(payload, user_first_name=user_first_name):
            events.append(event)
            if on_event is not None:
                on_event(event)
        return StreamResult(raw_model_text=self.raw_model_text, events=events, summary=self.summary)

    def _handle_line(self, line: str) -> GuideEvent | None:
        try:
            raw = json.loads(line)
        except (json.JSONDecodeError, RecursionError):
            self._drop(DROP_INVALID_JSON, line)
            return None

        outcome = self.validator(raw)
        if not outcome.accepted:
            self._drop(outcome.reason or "schema_invalid", line)
            return None

        event = outcome.event
        if isinstance(event, SuggestionEvent):
            if self.summary.accepted_suggestions >= MAX_SUGGESTIONS:
                self._drop(DROP_MAX_SUGGESTIONS, line)
                return None
            self.summary.accepted_suggestions += 1
        else:
            if not MIN_SUGGESTIONS <= self.summary.accepted_suggestions <= MAX_SUGGESTIONS:
                self._drop(DROP_INVALID_SUGGESTION_COUNT, line)
                return None
            self.summary.has_done = True

        self._trace("event", event.model_dump())
        return event

    def _drop(self, reason: str, line: str) -> None:
        self.summary.drop_reasons[reason] += 1
        self._trace("drop", {"reason": reason, "line": line[:500]})

    def _finish(self) -> None:
        summary = self.summary.to_json()
        summary["has_done"] = self.summary.has_done
        self._trace("summary", summary)
        logger.info("guide_stream_summary", model=self.model_config.model, **summary)

    def _trace(self, stage: str, payload: dict[str, Any]) -> None:
        if self.trace is not None:
            self.trace.append(stage=stage, payload=payload)

    def _trace_error(self, error: str) -> None:
        if self.trace is not None:
            self.trace.append_error(stage="error", error=error)
