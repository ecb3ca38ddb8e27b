"""Configuration management using pydantic-settings.

**Not a singleton**: each call to ``get_app_config()`` re-reads config
so that edits to ``configs/config.yaml`` are picked up by the next
application start without code changes.

Priority order (highest first):

1. Init kwargs (tests)
2. Environment variables (``AIPROXY_`` prefix, ``__`` nesting)
3. Bare environment variables kept from the serverless handlers this
   service replaces (``RATE_LIMIT_CAPACITY``, ``GEMINI_API_KEY`` ...)
4. ``.env`` dotenv file
5. Static YAML (``configs/config.yaml``)
6. Field defaults / file secrets
"""

import os
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from .system import (
    APIConfig,
    ConcurrencyConfig,
    LoggingConfig,
    MetricsConfig,
    RateLimitConfig,
    RetryConfig,
    ThirdPartyConfig,
    TracingConfig,
    UpstreamConfig,
)

# ---------------------------------------------------------------------------
# Path constants
# ---------------------------------------------------------------------------

CONFIG_PY_PATH = Path(__file__).resolve()
PROJECT_ROOT = CONFIG_PY_PATH.parent.parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "configs"

STATIC_CONFIG_FILE = CONFIG_DIR / "config.yaml"

DOTENV_FILE_PATH = PROJECT_ROOT / ".env"
ENV_DELIMITER = "__"  # Nested environment variable delimiter
ENV_PREFIX = "AIPROXY_"

DEFAULT_ENCODING = "utf-8"

# Bare variable name -> (section, field).
BARE_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "RATE_LIMIT_CAPACITY": ("rate_limit", "capacity"),
    "RATE_LIMIT_REFILL_PER_SEC": ("rate_limit", "refill_per_second"),
    "MAX_CONCURRENCY_PER_INSTANCE": ("concurrency", "max_concurrency"),
    "MAX_QUEUE_PER_INSTANCE": ("concurrency", "max_queue_size"),
    "QUEUE_TIMEOUT_MS": ("concurrency", "queue_timeout_ms"),
    "GEMINI_API_KEY": ("upstream", "gemini_api_key"),
    "GEMINI_MODEL": ("upstream", "gemini_model"),
    "OPENAI_API_KEY": ("upstream", "openai_api_key"),
    "OPENAI_MODEL": ("upstream", "openai_model"),
}


# ---------------------------------------------------------------------------
# Application config
# ---------------------------------------------------------------------------


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=DOTENV_FILE_PATH,
        env_file_encoding=DEFAULT_ENCODING,
        env_nested_delimiter=ENV_DELIMITER,
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
        yaml_file=STATIC_CONFIG_FILE,
        yaml_file_encoding=DEFAULT_ENCODING,
    )

    third_party: ThirdPartyConfig = Field(
        default_factory=ThirdPartyConfig,
        description="Third-party service configurations",
    )

    api: APIConfig = Field(
        default_factory=APIConfig,
        description="API configuration settings",
    )

    rate_limit: RateLimitConfig = Field(
        default_factory=RateLimitConfig,
        description="Per-client token bucket settings",
    )

    concurrency: ConcurrencyConfig = Field(
        default_factory=ConcurrencyConfig,
        description="Concurrency gate settings for upstream calls",
    )

    upstream: UpstreamConfig = Field(
        default_factory=UpstreamConfig,
        description="LLM provider settings",
    )

    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Retry policy for transient upstream failures",
    )

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Root logger settings",
    )

    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus exposition settings",
    )

    tracing: TracingConfig = Field(
        default_factory=TracingConfig,
        description="OpenTelemetry tracing settings",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            _BareEnvSettingsSource(settings_cls),
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


class _BareEnvSettingsSource(PydanticBaseSettingsSource):
    """Maps the unprefixed variable names listed in ``BARE_ENV_FIELDS``."""

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, dict[str, str]] = {}
        for env_name, (section, key) in BARE_ENV_FIELDS.items():
            value = os.environ.get(env_name)
            if value:
                data.setdefault(section, {})[key] = value
        return data


def get_app_config() -> AppConfig:
    """Get the application configuration (freshly read on every call)."""
    return AppConfig()
