from __future__ import annotations

from typing import Any, Iterable, Iterator, Protocol


class InferenceError(RuntimeError):
    pass


class ChatModel(Protocol):
    def complete(
        self,
        messages: Iterable[dict[str, Any]],
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        raise NotImplementedError

    def stream(
        self,
        messages: Iterable[dict[str, Any]],
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Iterator[str]:
        raise NotImplementedError
