from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(validation_alias="DATABASE_URL")
    redis_url: str = Field(validation_alias="REDIS_URL")
    app_env: str = Field(default="prod", validation_alias="APP_ENV")

    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com", validation_alias="OPENAI_BASE_URL")

    guide_model: str = Field(default="gpt-5.1-chat-latest", validation_alias="GUIDE_MODEL")
    guide_max_tokens: int = Field(default=900, validation_alias="GUIDE_MAX_TOKENS")
    guide_temperature: float | None = Field(default=None, validation_alias="GUIDE_TEMPERATURE")

    title_model: str = Field(default="gpt-4o-mini", validation_alias="TITLE_MODEL")
    summary_model: str = Field(default="gpt-4o-mini", validation_alias="SUMMARY_MODEL")
    memory_consolidation_model: str = Field(
        default="gpt-4o-mini", validation_alias="MEMORY_CONSOLIDATION_MODEL"
    )

    model_timeout_s: float = Field(default=60.0, validation_alias="MODEL_TIMEOUT_S")
    model_max_retries: int = Field(default=1, validation_alias="MODEL_MAX_RETRIES")
    model_backoff_s: float = Field(default=0.5, validation_alias="MODEL_BACKOFF_S")

    guide_suggestions_cache_ttl_sec: int = Field(
        default=8 * 60 * 60, validation_alias="GUIDE_SUGGESTIONS_CACHE_TTL_SEC"
    )
    guide_trace_dir: str | None = Field(default=None, validation_alias="GUIDE_TRACE_DIR")

    log_json: bool = Field(default=True, validation_alias="LOG_JSON")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

settings = Settings()
