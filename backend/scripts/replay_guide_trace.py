#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any


def _resolve_trace_dir(trace_dir: str | None = None) -> Path | None:
    if trace_dir:
        return Path(trace_dir).expanduser()
    env_dir = os.getenv("GUIDE_TRACE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return None


def _preview_text(value: Any, limit: int = 120) -> str | None:
    if value is None:
        return None
    text = str(value).replace("\n", " ").strip()
    if not text:
        return None
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def _summarize_stage(stage: str, payload: Any) -> str:
    if not isinstance(payload, dict):
        return str(payload)
    stage = stage.strip().lower()
    if stage == "request":
        return f"model={payload.get('model')} max_tokens={payload.get('max_tokens')}"
    if stage == "drop":
        parts = [f"reason={payload.get('reason')}"]
        preview = _preview_text(payload.get("line"), limit=80)
        if preview is not None:
            parts.append(f"line={preview}")
        return " ".join(parts)
    if stage == "event":
        event_type = payload.get("type")
        if event_type == "suggestion":
            return f"suggestion rank={payload.get('rank')} title={_preview_text(payload.get('title'))}"
        return str(event_type)
    if stage == "summary":
        return (
            f"accepted={payload.get('accepted_suggestions')} "
            f"dropped={payload.get('dropped')} done={payload.get('has_done')}"
        )
    if stage == "error":
        error = payload.get("error")
        return f"error={error}" if error is not None else "error"
    return f"keys={','.join(sorted(payload.keys()))}"


def _replay(trace_path: Path) -> int:
    if not trace_path.exists():
        print(f"trace file not found: {trace_path}", file=sys.stderr)
        return 1
    with trace_path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            raw = line.strip()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                print(f"line {line_no} parse error: {exc}", file=sys.stderr)
                continue
            stage = data.get("stage", "")
            print(f"{data.get('ts', '')} {stage} {_summarize_stage(stage, data.get('payload', {}))}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay a guide turn trace (JSONL)")
    parser.add_argument("--trace-id", required=True, help="trace / correlation id to replay")
    parser.add_argument("--trace-dir", default=None, help="trace directory (defaults to $GUIDE_TRACE_DIR)")
    args = parser.parse_args()

    trace_dir = _resolve_trace_dir(args.trace_dir)
    if trace_dir is None:
        print("no trace directory: pass --trace-dir or set GUIDE_TRACE_DIR", file=sys.stderr)
        return 2
    return _replay(trace_dir / f"{args.trace_id}.jsonl")


if __name__ == "__main__":
    raise SystemExit(main())
