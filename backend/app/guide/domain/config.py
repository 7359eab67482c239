from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelConfig:
    model: str
    temperature: float | None = None
    max_tokens: int = 900


@dataclass(frozen=True)
class TitleConfig:
    model: str = "gpt-4o-mini"
    max_turns: int = 16
    max_tokens: int = 24
    temperature: float = 0.2


@dataclass(frozen=True)
class SummaryConfig:
    model: str = "gpt-4o-mini"
    max_turns: int = 30
    max_tokens: int = 500
    temperature: float = 0.2


@dataclass(frozen=True)
class ConsolidationConfig:
    model: str = "gpt-4o-mini"
    max_tokens: int = 800
    temperature: float = 0.2
    max_session_notes: int = 200
    max_global_notes: int = 200
    max_output_notes: int = 60
