from __future__ import annotations

import json
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _jsonable(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in obj]
    if is_dataclass(obj) and not isinstance(obj, type):
        return _jsonable(asdict(obj))
    if hasattr(obj, "model_dump") and callable(getattr(obj, "model_dump")):
        return _jsonable(obj.model_dump())
    return str(obj)


def new_trace_id() -> str:
    return uuid.uuid4().hex


class TraceLogger:
    """
    Append-only JSONL trace of one guide turn: one file per trace id with
    ``request``, ``drop``, ``event``, ``summary`` and ``error`` stages.
    """

    def __init__(self, trace_id: str, trace_dir: str | Path) -> None:
        self._trace_id = str(trace_id)
        self._trace_dir = Path(trace_dir).expanduser()
        self._trace_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._trace_dir / f"{self._trace_id}.jsonl"

    @property
    def trace_id(self) -> str:
        return self._trace_id

    @property
    def path(self) -> Path:
        return self._path

    def append(self, *, stage: str, payload: dict, meta: dict | None = None) -> None:
        self._write_line(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "trace_id": self._trace_id,
                "stage": str(stage),
                "payload": _jsonable(payload),
                "meta": _jsonable(meta or {}),
            }
        )

    def append_error(self, *, stage: str, error: str, meta: dict | None = None) -> None:
        self.append(stage=stage, payload={"error": str(error)}, meta=meta)

    def _write_line(self, entry: dict[str, Any]) -> None:
        line = json.dumps(entry, ensure_ascii=False, separators=(",", ":"))
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def get_trace_logger(trace_id: str | None, trace_dir: str | Path | None) -> TraceLogger | None:
    """None when no trace directory is configured."""
    if not trace_dir:
        return None
    return TraceLogger(trace_id or new_trace_id(), trace_dir)
