from __future__ import annotations

import http.client
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping

from app.guide.adapters.inference_adapter import InferenceError
from app.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_s: float = 60.0
    max_retries: int = 1
    backoff_s: float = 0.5


def supports_temperature_override(model: str) -> bool:
    return not model.lower().startswith("gpt-5")


class OpenAIChatClient:
    """OpenAI-compatible ``/v1/chat/completions`` client (JSON and SSE streaming)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._retry = retry or RetryPolicy()

    def _build_payload(
        self,
        messages: Iterable[dict[str, Any]],
        model: str,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": list(messages),
        }
        if temperature is not None and supports_temperature_override(model):
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_completion_tokens"] = max_tokens
        return payload

    def _request(self, payload: dict[str, Any]) -> urllib.request.Request:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return urllib.request.Request(
            f"{self._base_url}/v1/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )

    def complete(
        self,
        messages: Iterable[dict[str, Any]],
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        payload = self._build_payload(messages, model, temperature, max_tokens)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return _extract_message_content(self._post_json(payload))

    def stream(
        self,
        messages: Iterable[dict[str, Any]],
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Iterator[str]:
        """
        Yield content deltas as they arrive. The connection is closed when the
        consumer closes the generator; no retry once bytes have been read.
        """
        payload = self._build_payload(messages, model, temperature, max_tokens)
        payload["stream"] = True
        try:
            response = urllib.request.urlopen(self._request(payload), timeout=self._retry.timeout_s)
        except urllib.error.HTTPError as exc:
            detail = _read_error_body(exc)
            raise InferenceError(f"chat.completions stream error: {exc.code} - {detail}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise InferenceError(f"chat.completions stream failed: {exc}") from exc

        try:
            for delta in iter_sse_content(response):
                yield delta
        except (OSError, http.client.HTTPException) as exc:
            raise InferenceError(f"chat.completions stream interrupted: {exc}") from exc
        finally:
            response.close()

    def _post_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self._retry.max_retries + 1):
            try:
                start = time.perf_counter()
                with urllib.request.urlopen(self._request(payload), timeout=self._retry.timeout_s) as response:
                    data = response.read().decode("utf-8")
                parsed = json.loads(data)
                logger.debug(
                    "chat_completion_ok",
                    model=payload.get("model"),
                    latency_ms=int((time.perf_counter() - start) * 1000),
                    content_len=len(data),
                )
                return parsed
            except (OSError, http.client.HTTPException, ValueError) as exc:
                # HTTPError, URLError and dropped connections are all OSError
                last_error = exc
                is_timeout = isinstance(exc, TimeoutError) or "timed out" in str(exc).lower()
                if is_timeout:
                    break
                if isinstance(exc, urllib.error.HTTPError) and getattr(exc, "code", 0) < 500:
                    break
                if attempt >= self._retry.max_retries:
                    break
                logger.info("chat_completion_retry", attempt=attempt + 1, error=str(exc))
                time.sleep(self._retry.backoff_s)
        raise InferenceError(f"chat.completions failed after retries: {last_error}")


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")[:500]
    except Exception:  # noqa: BLE001 - error body is best-effort detail
        return ""


def iter_sse_content(lines: Iterable[bytes | str]) -> Iterator[str]:
    """
    Decode an SSE body into ``choices[0].delta.content`` strings. Stops at
    ``data: [DONE]``; malformed frames are skipped.
    """
    for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data:
            continue
        if data == "[DONE]":
            return
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            continue
        choices = chunk.get("choices") if isinstance(chunk, dict) else None
        if not choices or not isinstance(choices[0], dict):
            continue
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content


def _extract_message_content(response: Mapping[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise InferenceError("chat.completions response missing choices.")

    first = choices[0] or {}
    message = first.get("message") or {}
    content = message.get("content")
    if content is None:
        content = first.get("text")
    if content is None:
        raise InferenceError("chat.completions response missing content.")
    return str(content).strip()
