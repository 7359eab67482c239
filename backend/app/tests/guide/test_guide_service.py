from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.guide.adapters.cache import (
    get_cached_suggestions,
    make_suggestions_cache_key,
    set_cached_suggestions,
)
from app.guide.adapters.inference_adapter import InferenceError
from app.guide.app.services import GuideService, GuideServiceError, apply_provider_overrides
from app.guide.domain.config import ModelConfig

PAYLOAD = {
    "anchors": [{"id": "anc-1", "ref": "PSA 23"}],
    "aff": ["open_passage", "start_checkin"],
    "candidates": [{"id": "c1", "source": "note", "metadata": {"fullContent": "long"}}],
}


def _line(rank: int) -> str:
    return json.dumps(
        {
            "type": "suggestion",
            "rank": rank,
            "title": "Rest in Psalm 23",
            "subtitle": "Return to the shepherd psalm you started.",
            "normalized_action": "read_scripture",
            "grounding": "reading_anchor",
            "target_label": "Psalm 23",
            "action": {"type": "open_passage", "params": {"ref_key": "PSA:23"}},
            "evidence_ids": ["anc-1"],
            "confidence": 0.9,
        }
    )


def _complete_stream() -> list[str]:
    return ["\n".join([_line(1), _line(2), _line(3), '{"type":"done"}']) + "\n"]


def _service(model, redis_client=None) -> GuideService:
    return GuideService(model, ModelConfig(model="gpt-5.1-chat-latest"), redis_client, cache_ttl_sec=60)


def test_cache_key_ignores_action_order() -> None:
    a = make_suggestions_cache_key("u1", ["start_checkin", "open_passage"])
    b = make_suggestions_cache_key("u1", ["open_passage", "start_checkin", "open_passage"])
    assert a == b
    assert a.startswith("guide:suggestions:u1:")
    assert len(a.rsplit(":", 1)[1]) == 24
    assert make_suggestions_cache_key("u1", None) != a


def test_cache_tolerates_redis_failures(fake_redis) -> None:
    class BrokenRedis:
        def get(self, key):
            raise RedisConnectionError("down")

        def setex(self, key, ttl, value):
            raise RedisConnectionError("down")

    assert get_cached_suggestions(BrokenRedis(), "k") is None
    set_cached_suggestions(BrokenRedis(), "k", [{"type": "done"}], 60)

    fake_redis.set("bad", "{not json")
    assert get_cached_suggestions(fake_redis, "bad") is None
    set_cached_suggestions(fake_redis, "k", [{"type": "done"}], 0)
    assert get_cached_suggestions(fake_redis, "k") == [{"type": "done"}]
    assert "k" not in fake_redis.ttls


def test_complete_run_is_cached_and_replayed(chat_model_factory, fake_redis) -> None:
    model = chat_model_factory(chunks=_complete_stream())
    first = _service(model, fake_redis).stream_suggestions("u1", PAYLOAD)
    lines = list(first.lines)

    assert first.cache_hit is False
    assert [line["type"] for line in lines] == ["suggestion"] * 3 + ["done"]
    key = make_suggestions_cache_key("u1", ["open_passage", "start_checkin"])
    assert fake_redis.ttls[key] == 60

    replay_model = chat_model_factory(chunks=[])
    second = _service(replay_model, fake_redis).stream_suggestions("u1", PAYLOAD)
    assert second.cache_hit is True
    assert list(second.lines) == lines
    assert replay_model.calls == []

    refreshed = _service(chat_model_factory(chunks=_complete_stream()), fake_redis).stream_suggestions(
        "u1", PAYLOAD, force_refresh=True
    )
    assert refreshed.cache_hit is False


def test_incomplete_run_is_not_cached_and_debug_line_is_last(chat_model_factory, fake_redis) -> None:
    model = chat_model_factory(chunks=[_line(1) + "\nnot json\n"])
    stream = _service(model, fake_redis).stream_suggestions("u1", PAYLOAD, debug=True)
    lines = list(stream.lines)

    assert lines[-1] == {
        "type": "debug",
        "scope": "guide_start",
        "dropped": 1,
        "drop_reasons": {"invalid_json": 1},
        "accepted_suggestions": 1,
        "used_fallback": False,
    }
    assert fake_redis.store == {}


def test_missing_api_key_is_a_configuration_error() -> None:
    with pytest.raises(GuideServiceError) as exc_info:
        _service(None).context_run(PAYLOAD)
    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "openai_api_key_not_configured"


def test_provider_failure_becomes_502_with_correlation_id(chat_model_factory, fake_redis) -> None:
    model = chat_model_factory(error=InferenceError("chat.completions stream error: 500"))

    with pytest.raises(GuideServiceError) as exc_info:
        _service(model, fake_redis).stream_suggestions("u1", PAYLOAD)

    error = exc_info.value
    assert error.status_code == 502
    assert error.body["error"]
    assert "500" in error.body["details"]
    assert error.body["correlation_id"]


def test_context_run_reports_events_and_summary(chat_model_factory) -> None:
    model = chat_model_factory(chunks=_complete_stream())
    result = _service(model).context_run(PAYLOAD, user_first_name="Sam")

    assert len(result["parsed_events"]) == 4
    assert result["debug_summary"] == {
        "dropped": 0,
        "drop_reasons": {},
        "accepted_suggestions": 3,
        "used_fallback": False,
    }
    assert result["raw_model_text"] == _complete_stream()[0]
    sent = json.loads(model.calls[0]["messages"][1]["content"])
    assert "fullContent" not in sent["candidates"][0]["metadata"]
    assert sent["user"] == {"first_name": "Sam"}


def test_context_run_applies_provider_overrides(chat_model_factory) -> None:
    model = chat_model_factory(chunks=_complete_stream())
    service = _service(model)

    service.context_run(PAYLOAD, provider_overrides={"model": "gpt-4o", "temperature": 0.4, "max_tokens": 1200})

    call = model.calls[0]
    assert (call["model"], call["temperature"], call["max_tokens"]) == ("gpt-4o", 0.4, 1200)
    assert service.model_config == ModelConfig(model="gpt-5.1-chat-latest")


def test_partial_overrides_keep_configured_defaults() -> None:
    base = ModelConfig(model="gpt-5.1-chat-latest", temperature=0.7, max_tokens=900)
    assert apply_provider_overrides(base, None) is base
    assert apply_provider_overrides(base, {"max_tokens": 50, "temperature": None}) == ModelConfig(
        model="gpt-5.1-chat-latest", temperature=0.7, max_tokens=50
    )
