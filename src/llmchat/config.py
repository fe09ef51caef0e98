from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="llm-chat-core")
    app_version: str = Field(default="0.1.0")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Observability
    otel_exporter_otlp_endpoint: str = Field(default="http://jaeger:4318")
    otel_service_name: str = Field(default="llm-chat-core")
    log_level: str = Field(default="INFO")

    # Direct vendor credentials, stored as SecretStr to avoid accidental logging
    openai_api_key: SecretStr | None = Field(default=None)
    anthropic_api_key: SecretStr | None = Field(default=None)
    openai_base_url: str = Field(default="https://api.openai.com")
    anthropic_base_url: str = Field(default="https://api.anthropic.com")
    anthropic_version: str = Field(default="2023-06-01")
    anthropic_max_tokens: int = Field(default=4096, gt=0)

    # LiteLLM gateway
    litellm_enabled: bool = Field(default=False)
    litellm_base_url: str = Field(default="http://localhost:4000")
    litellm_api_key: SecretStr | None = Field(default=None)
    litellm_timeout: float = Field(default=10.0, gt=0)

    # LLM call behaviour
    llm_timeout: int = Field(default=60)
    llm_max_retries: int = Field(default=3, ge=0)
    llm_retry_initial_delay: float = Field(default=1.0, ge=0)
    llm_retry_max_delay: float = Field(default=10.0, ge=0)

    # Model catalog
    catalog_ttl_seconds: float = Field(default=300.0, gt=0)
    model_info_cache_url: str | None = Field(default=None)


settings = Settings()
