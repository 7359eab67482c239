from __future__ import annotations

import json
from typing import Any, Mapping


TRUNCATION_SUFFIX = "…(truncated)"

LABEL_MAX_CHARS = 200
PREVIEW_MAX_CHARS = 900
EXTRA_STRING_MAX_CHARS = 200

METADATA_MAX_JSON_CHARS = 20_000
METADATA_STRING_MAX_CHARS = 800
METADATA_ARRAY_MAX_ITEMS = 50
METADATA_ARRAY_STRING_MAX_CHARS = 200
REDUCED_STRING_MAX_CHARS = 200
REDUCED_ARRAY_MAX_ITEMS = 20
REDUCED_ARRAY_STRING_MAX_CHARS = 120

# full-content blobs never go to the model
_HEAVY_METADATA_KEYS = frozenset({"fullContent", "artifactMetadata"})


def truncate_string(value: str, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}{TRUNCATION_SUFFIX}"


def estimate_json_chars(value: Any) -> int:
    try:
        return len(json.dumps(value, ensure_ascii=False, separators=(",", ":")))
    except (TypeError, ValueError):
        return 0


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _reduce_metadata(cleaned: Mapping[str, Any]) -> dict[str, Any]:
    reduced: dict[str, Any] = {}
    for key, value in cleaned.items():
        if value is None or isinstance(value, (bool, int, float)):
            reduced[key] = value
        elif isinstance(value, str):
            reduced[key] = truncate_string(value, REDUCED_STRING_MAX_CHARS)
        elif (
            isinstance(value, list)
            and len(value) <= REDUCED_ARRAY_MAX_ITEMS
            and all(_is_scalar(item) for item in value)
        ):
            reduced[key] = [
                truncate_string(item, REDUCED_ARRAY_STRING_MAX_CHARS) if isinstance(item, str) else item
                for item in value
            ]

    # many scalar keys can still exceed the budget; keep the leading keys that fit
    if estimate_json_chars(reduced) > METADATA_MAX_JSON_CHARS:
        bounded: dict[str, Any] = {}
        for key, value in reduced.items():
            bounded[key] = value
            if estimate_json_chars(bounded) > METADATA_MAX_JSON_CHARS:
                del bounded[key]
                break
        reduced = bounded
    return reduced


def compact_metadata(metadata: Any) -> Any:
    """
    Two tiers: drop heavy keys and trim strings/arrays; if the result is still
    over budget, keep only scalar fields and short scalar arrays.
    """
    if not isinstance(metadata, Mapping):
        return metadata

    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if key in _HEAVY_METADATA_KEYS:
            continue
        if isinstance(value, str):
            cleaned[key] = truncate_string(value, METADATA_STRING_MAX_CHARS)
        elif isinstance(value, list):
            cleaned[key] = [
                truncate_string(item, METADATA_ARRAY_STRING_MAX_CHARS) if isinstance(item, str) else item
                for item in value[:METADATA_ARRAY_MAX_ITEMS]
            ]
        else:
            cleaned[key] = value

    if estimate_json_chars(cleaned) <= METADATA_MAX_JSON_CHARS:
        return cleaned
    return _reduce_metadata(cleaned)


def compact_candidate(candidate: Any) -> Any:
    if not isinstance(candidate, Mapping):
        return candidate

    compacted: dict[str, Any] = {}
    if isinstance(candidate.get("id"), str):
        compacted["id"] = candidate["id"]
    if isinstance(candidate.get("source"), str):
        compacted["source"] = candidate["source"]
    if isinstance(candidate.get("label"), str):
        compacted["label"] = truncate_string(candidate["label"], LABEL_MAX_CHARS)
    if isinstance(candidate.get("preview"), str):
        compacted["preview"] = truncate_string(candidate["preview"], PREVIEW_MAX_CHARS)
    if candidate.get("features") is not None:
        compacted["features"] = candidate["features"]
    if candidate.get("metadata") is not None:
        compacted["metadata"] = compact_metadata(candidate["metadata"])

    for key, value in candidate.items():
        if key in compacted:
            continue
        if isinstance(value, str):
            compacted[key] = truncate_string(value, EXTRA_STRING_MAX_CHARS)
        elif value is None or isinstance(value, (bool, int, float)):
            compacted[key] = value

    return compacted


def compact_context_payload(payload: Any) -> Any:
    """Bound the ``candidates`` of a context payload; every other key passes through."""
    if not isinstance(payload, Mapping):
        return payload

    compacted = dict(payload)
    candidates = payload.get("candidates")
    if isinstance(candidates, list):
        compacted["candidates"] = [compact_candidate(c) for c in candidates]
    return compacted
