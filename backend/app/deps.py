# backend/app/deps.py
from functools import lru_cache

from sqlalchemy import create_engine
import redis

from app.config import settings
from app.guide.adapters.inference_openai import OpenAIChatClient, RetryPolicy
from app.guide.domain.config import (
    ConsolidationConfig,
    ModelConfig,
    SummaryConfig,
    TitleConfig,
)


@lru_cache
def get_engine():
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    return create_engine(settings.database_url, pool_pre_ping=True)


@lru_cache
def get_redis():
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


@lru_cache
def get_chat_model() -> OpenAIChatClient | None:
    """Provider client, or None when no API key is configured (fallback-only mode)."""
    if not settings.openai_api_key:
        return None
    return OpenAIChatClient(
        settings.openai_base_url,
        api_key=settings.openai_api_key,
        retry=RetryPolicy(
            timeout_s=settings.model_timeout_s,
            max_retries=settings.model_max_retries,
            backoff_s=settings.model_backoff_s,
        ),
    )


def get_guide_model_config() -> ModelConfig:
    return ModelConfig(
        model=settings.guide_model,
        temperature=settings.guide_temperature,
        max_tokens=settings.guide_max_tokens,
    )


def get_title_config() -> TitleConfig:
    return TitleConfig(model=settings.title_model)


def get_summary_config() -> SummaryConfig:
    return SummaryConfig(model=settings.summary_model)


def get_consolidation_config() -> ConsolidationConfig:
    return ConsolidationConfig(model=settings.memory_consolidation_model)
