"""Application configuration contract."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from nyaagent.errors import ConfigError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field(alias="APP_ENV", default="dev")
    log_level: str = Field(alias="LOG_LEVEL", default="INFO")
    log_json: int = Field(alias="LOG_JSON", default=0)

    # Conversation
    llm_stream: bool = Field(alias="LLM_STREAM", default=False)
    llm_temperature: float = Field(alias="LLM_TEMPERATURE", default=0.7)
    llm_max_tokens: int = Field(alias="LLM_MAX_TOKENS", default=2048)
    llm_max_history: int = Field(alias="LLM_MAX_HISTORY", default=50)
    llm_system_prompt: str = Field(alias="LLM_SYSTEM_PROMPT", default="")
    max_tool_iterations: int = Field(alias="MAX_TOOL_ITERATIONS", default=10)
    provider_ready_timeout_seconds: float = Field(
        alias="PROVIDER_READY_TIMEOUT_SECONDS", default=5.0
    )

    # Character
    use_custom_character: bool = Field(alias="USE_CUSTOM_CHARACTER", default=False)
    custom_name: str = Field(alias="CUSTOM_NAME", default="")
    custom_personality: str = Field(alias="CUSTOM_PERSONALITY", default="")

    # Providers
    default_provider_timeout_seconds: int = Field(
        alias="DEFAULT_PROVIDER_TIMEOUT_SECONDS", default=60
    )
    cli_provider: str = Field(alias="NYA_PROVIDER", default="openai")
    cli_base_url: str = Field(alias="NYA_BASE_URL", default="")
    cli_model: str = Field(alias="NYA_MODEL", default="")
    cli_api_key: str = Field(alias="NYA_API_KEY", default="")


def validate_settings(settings: Settings) -> None:
    problems: list[str] = []
    if settings.max_tool_iterations <= 0:
        problems.append("MAX_TOOL_ITERATIONS(must be > 0)")
    if settings.llm_max_history <= 0:
        problems.append("LLM_MAX_HISTORY(must be > 0)")
    if settings.provider_ready_timeout_seconds <= 0:
        problems.append("PROVIDER_READY_TIMEOUT_SECONDS(must be > 0)")
    if not 0.0 <= settings.llm_temperature <= 2.0:
        problems.append("LLM_TEMPERATURE(expected 0..2)")
    if problems:
        raise ConfigError(f"invalid configuration: {', '.join(problems)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
