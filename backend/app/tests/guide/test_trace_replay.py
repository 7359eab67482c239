from __future__ import annotations

import importlib.util
import json
from pathlib import Path

from app.guide.domain.config import ModelConfig
from app.guide.services.allow_lists import extract_allow_lists
from app.guide.services.events import EventValidator
from app.guide.services.stream_session import StreamSession
from app.guide.services.trace_logger import TraceLogger, get_trace_logger


def _load_replay_module() -> object:
    script_path = Path(__file__).resolve().parents[3] / "scripts" / "replay_guide_trace.py"
    spec = importlib.util.spec_from_file_location("replay_guide_trace", script_path)
    if not spec or not spec.loader:
        raise RuntimeError("failed_to_load_replay_module")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_trace_logger_and_replay(tmp_path, capsys) -> None:
    logger = TraceLogger("turn-1", trace_dir=tmp_path)
    logger.append(stage="request", payload={"model": "gpt-4o-mini", "max_tokens": 900})
    logger.append(stage="drop", payload={"reason": "invalid_json", "line": "not json"})
    logger.append(stage="event", payload={"type": "suggestion", "rank": 1, "title": "Pray"})
    logger.append(stage="summary", payload={"accepted_suggestions": 1, "dropped": 1, "has_done": False})
    logger.append_error(stage="error", error="upstream closed")

    module = _load_replay_module()
    exit_code = module._replay(tmp_path / "turn-1.jsonl")

    captured = capsys.readouterr()
    assert exit_code == 0
    assert "request model=gpt-4o-mini max_tokens=900" in captured.out
    assert "drop reason=invalid_json line=not json" in captured.out
    assert "event suggestion rank=1 title=Pray" in captured.out
    assert "summary accepted=1 dropped=1 done=False" in captured.out
    assert "error error=upstream closed" in captured.out


def test_missing_trace_file_fails(tmp_path, capsys) -> None:
    module = _load_replay_module()
    assert module._replay(tmp_path / "nope.jsonl") == 1
    assert "trace file not found" in capsys.readouterr().err


def test_stream_session_writes_trace(tmp_path, chat_model_factory) -> None:
    payload = {"candidates": [{"id": "a1", "source": "note"}]}
    trace = get_trace_logger("turn-2", tmp_path)
    session = StreamSession(
        chat_model_factory(chunks=["garbage\n"]),
        ModelConfig(model="gpt-4o-mini"),
        EventValidator(extract_allow_lists(payload)),
        trace=trace,
    )

    session.run(payload)

    stages = [json.loads(line)["stage"] for line in trace.path.read_text(encoding="utf-8").splitlines()]
    assert stages == ["request", "drop", "summary"]
    assert get_trace_logger("turn-3", None) is None
