from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy.exc import OperationalError

from app.guide.adapters.inference_adapter import InferenceError
from app.guide.app.services import build_chat_service
from app.guide.domain.models import ChatTranscript
from app.guide.services.session_summary import (
    SessionSummaryArtifactGenerator,
    fallback_summary,
    prepare_turns,
)
from app.models import Artifact

ENDED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

MESSAGES = [
    {"role": "user", "content": "Can you walk me through Romans 8?"},
    {"role": "assistant", "content": "Romans 8 opens with no condemnation in Christ..."},
    {"role": "user", "content": "ok"},
    {"role": "user", "content": "What does 'adoption' mean in verse 15?"},
    {"role": "assistant", "content": "Paul uses adoption to describe belonging..."},
]

SUMMARY_JSON = json.dumps(
    {
        "oneSentenceSummary": "The user explored Romans 8 and adoption.",
        "summary": "The user asked about Romans 8. The assistant explained adoption.",
        "topics": ["Romans 8", "adoption"],
        "scriptureRefs": ["Romans 8:15"],
        "openQuestions": ["How does adoption relate to prayer?"],
        "userExpressedConcerns": [],
        "suggestedResumePrompt": "Shall we look at verse 26 next?",
    }
)


def _transcript(session_id: str = "conv-1") -> ChatTranscript:
    return ChatTranscript.model_validate({"session_id": session_id, "ended_at": ENDED, "messages": MESSAGES})


def test_ending_twice_creates_one_summary_and_consolidates_once(engine, repo) -> None:
    service = build_chat_service(engine, None)
    service.start("u1", "conv-1")
    service.add_note("u1", "conv-1", "Prefers reading plans in the morning", keywords=["Morning Routine"])

    first = service.end("u1", "conv-1", _transcript())
    second = service.end("u1", "conv-1", _transcript())

    assert first["success"] is True
    assert first["savedTranscript"] is True
    assert first["sessionSummaryCreated"] is True
    assert first["consolidated"]["sessionNotesIn"] == 1
    assert first["consolidated"]["usedFallback"] is True

    assert second["savedTranscript"] is True
    assert second["sessionSummaryCreated"] is False
    assert second["consolidated"] == {}

    assert repo.count_session_summaries("u1", "conv-1") == 1
    assert len(repo.list_sessions("u1")) == 1
    assert repo.get_user_memory_notes("u1")[0]["keywords"] == ["morning_routine"]
    # pointer is gone, so it can be created again
    assert repo.create_conversation_pointer(user_id="u1", conversation_id="conv-1") is True


def test_short_transcript_skips_summary(engine, repo) -> None:
    service = build_chat_service(engine, None)
    transcript = ChatTranscript.model_validate(
        {
            "session_id": "conv-2",
            "ended_at": ENDED,
            "messages": [{"role": "assistant", "content": "Hi"}, {"role": "assistant", "content": "Still there?"}],
        }
    )

    result = service.end("u1", "conv-2", transcript)

    assert result == {"success": True, "savedTranscript": False, "sessionSummaryCreated": False, "consolidated": {}}
    assert repo.count_session_summaries("u1", "conv-2") == 0


def test_pointer_cleanup_failure_is_swallowed(engine, repo, monkeypatch) -> None:
    service = build_chat_service(engine, None)

    def broken(conversation_id: str) -> int:
        raise OperationalError("DELETE FROM chat_conversations", {}, Exception("db down"))

    monkeypatch.setattr(service.end_flow.repo, "delete_conversation_pointer", broken)

    result = service.end("u1", "conv-3", _transcript("conv-3"))
    assert result["savedTranscript"] is True


def test_summary_artifact_from_model_output(chat_model_factory, engine, repo) -> None:
    model = chat_model_factory(replies=[SUMMARY_JSON])
    generator = SessionSummaryArtifactGenerator(repo, model)

    created = generator.create("u1", "conv-4", [(m["role"], m["content"]) for m in MESSAGES], {"source": "test"})

    assert created is True
    assert model.calls[0]["json_mode"] is True
    assert model.calls[0]["max_tokens"] == 500
    prompt = model.calls[0]["messages"][1]["content"]
    assert "Romans 8?" in prompt
    assert "USER: ok" not in prompt

    with engine.connect() as conn:
        row = conn.execute(Artifact.__table__.select()).mappings().one()
    assert row["type"] == "conversation_session_summary"
    assert row["scope"] == "private"
    assert row["title"] == "The user explored Romans 8 and adoption."
    assert row["tags"] == ["Romans 8", "adoption"]
    assert row["scripture_refs"] == ["Romans 8:15"]
    assert row["metadata"]["source"] == "test"
    assert row["metadata"]["usedFallback"] is False


def test_summary_falls_back_on_model_failure(chat_model_factory, repo) -> None:
    generator = SessionSummaryArtifactGenerator(repo, chat_model_factory(error=InferenceError("timeout")))
    summary = generator.generate("conv-5", [(m["role"], m["content"]) for m in MESSAGES])

    assert summary.used_fallback is True
    assert summary.one_sentence_summary == "Can you walk me through Romans 8?"
    assert summary.topics == []


def test_unparseable_summary_falls_back(chat_model_factory, repo) -> None:
    generator = SessionSummaryArtifactGenerator(repo, chat_model_factory(replies=["not json"]))
    assert generator.generate("conv-6", [("user", "Tell me about grace please")]).used_fallback is True


def test_duplicate_artifact_insert_reports_not_created(repo) -> None:
    kwargs = dict(
        user_id="u1",
        session_id="conv-7",
        scope="private",
        type="conversation_session_summary",
        title="t",
        content="c",
        content_hash="h",
    )
    assert repo.create_artifact(**kwargs) is True
    assert repo.create_artifact(**kwargs) is False
    assert repo.session_summary_exists("u1", "conv-7") is True
    assert repo.count_session_summaries("u1", "conv-7") == 1


def test_summary_turn_preparation() -> None:
    turns = [("user", "ok")] + [("assistant", f"a{i}") for i in range(35)]
    prepared = prepare_turns(turns, 30)
    assert len(prepared) == 30
    assert ("user", "ok") not in prepared

    fallback = fallback_summary([("assistant", "Welcome"), ("user", "I feel anxious about work")])
    assert fallback.one_sentence_summary == "I feel anxious about work"
    assert "User: I feel anxious about work" in fallback.summary
