from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

from redis.exceptions import RedisError

from app.logging import get_logger

logger = get_logger(__name__)

SUGGESTIONS_CACHE_VERSION = 1


def make_suggestions_cache_key(user_id: str, enabled_actions: Iterable[str] | None) -> str:
    key_fields = {
        "v": SUGGESTIONS_CACHE_VERSION,
        "enabledActions": sorted(set(enabled_actions or ())),
    }
    payload = json.dumps(key_fields, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:24]
    return f"guide:suggestions:{user_id}:{digest}"


def _normalize_ttl(value: Any) -> int:
    try:
        ttl = int(value)
    except (TypeError, ValueError):
        ttl = 0
    return max(ttl, 0)


def get_cached_suggestions(redis_client: Any, key: str) -> list[dict[str, Any]] | None:
    """Cached NDJSON lines for ``key``; None on miss, corrupt entry or Redis failure."""
    if redis_client is None:
        return None
    try:
        raw = redis_client.get(key)
    except RedisError as exc:
        logger.warning("suggestions_cache_read_failed", key=key, error=str(exc))
        return None
    if not raw:
        return None
    try:
        lines = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(lines, list) or not all(isinstance(line, dict) for line in lines):
        return None
    return lines


def set_cached_suggestions(redis_client: Any, key: str, lines: list[dict[str, Any]], ttl_sec: int) -> None:
    if redis_client is None:
        return
    ttl = _normalize_ttl(ttl_sec)
    data = json.dumps(lines, ensure_ascii=False, separators=(",", ":"))
    try:
        if ttl:
            redis_client.setex(key, ttl, data)
        else:
            redis_client.set(key, data)
    except RedisError as exc:
        logger.warning("suggestions_cache_write_failed", key=key, error=str(exc))
