from typing import Literal, Optional

from pydantic import BaseModel, Field, SecretStr


class ThirdPartyConfig(BaseModel):
    """Configuration for third-party integrations."""

    redis_uri: Optional[str] = Field(
        default=None,
        description=(
            "Redis connection URI for shared rate-limit buckets. "
            "Leave unset to keep buckets in process memory."
        ),
    )


class APIConfig(BaseModel):
    """API configuration settings."""

    host: str = Field(default="0.0.0.0", description="API server host")
    port: int = Field(default=8000, description="API server port")
    proxy_path: str = Field(
        default="/api/llm-proxy",
        description="Path of the POST-only proxy endpoint",
    )


class RateLimitConfig(BaseModel):
    """Per-client token bucket settings."""

    capacity: int = Field(
        default=6, ge=1, description="Maximum tokens per client bucket"
    )
    refill_per_second: float = Field(
        default=1.0, gt=0, description="Tokens added per second of idle time"
    )
    idle_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description=(
            "Evict a bucket once idle for this many full-refill periods "
            "(capacity / refill_per_second seconds each)"
        ),
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Minimum time between eviction sweeps of local buckets",
    )

    @property
    def idle_ttl_seconds(self) -> float:
        return self.idle_multiplier * self.capacity / self.refill_per_second


class ConcurrencyConfig(BaseModel):
    """Concurrency gate settings for upstream calls."""

    max_concurrency: int = Field(
        default=2, ge=1, description="Maximum simultaneous upstream calls"
    )
    max_queue_size: int = Field(
        default=16,
        ge=0,
        description="Maximum requests parked waiting for a slot",
    )
    queue_timeout_ms: int = Field(
        default=10_000,
        ge=0,
        description="How long a parked request may wait before rejection",
    )


class UpstreamConfig(BaseModel):
    """LLM provider settings."""

    provider: Literal["gemini", "openai"] = Field(
        default="gemini", description="Upstream provider dialect"
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST API base URL",
    )
    gemini_api_key: Optional[SecretStr] = Field(
        default=None, description="Gemini API key"
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash", description="Default Gemini model"
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible API base URL",
    )
    openai_api_key: Optional[SecretStr] = Field(
        default=None, description="OpenAI API key"
    )
    openai_model: str = Field(
        default="gpt-4o-mini", description="Default OpenAI model"
    )
    timeout_seconds: float = Field(
        default=60.0, gt=0, description="Per-attempt HTTP timeout"
    )

    @property
    def api_key(self) -> Optional[str]:
        secret = (
            self.gemini_api_key
            if self.provider == "gemini"
            else self.openai_api_key
        )
        if secret is None or not secret.get_secret_value():
            return None
        return secret.get_secret_value()

    @property
    def model(self) -> str:
        return self.gemini_model if self.provider == "gemini" else self.openai_model

    @property
    def base_url(self) -> str:
        url = (
            self.gemini_base_url
            if self.provider == "gemini"
            else self.openai_base_url
        )
        return url.rstrip("/")


class RetryConfig(BaseModel):
    """Retry policy for transient upstream failures."""

    max_retries: int = Field(
        default=3, ge=0, description="Retries after the first attempt"
    )
    base_delay_ms: int = Field(
        default=1000, ge=0, description="Backoff base; doubles every attempt"
    )
    jitter_ms: int = Field(
        default=200, ge=0, description="Upper bound of the random jitter"
    )
    max_retry_after_s: float = Field(
        default=30.0,
        ge=0,
        description="Cap applied to an upstream-supplied Retry-After",
    )


class LoggingConfig(BaseModel):
    """Root logger settings."""

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(
        default=True,
        description="Emit JSON lines (False for coloured dev output)",
    )


class MetricsConfig(BaseModel):
    """Prometheus exposition settings."""

    enabled: bool = Field(default=True, description="Expose /metrics")
    excluded_handlers: list[str] = Field(
        default_factory=lambda: ["/metrics", "/health"],
        description="Route paths skipped by the HTTP metrics middleware",
    )


class TracingConfig(BaseModel):
    """OpenTelemetry tracing settings."""

    enabled: bool = Field(default=False, description="Enable OTLP export")
    endpoint: str = Field(default="", description="OTLP HTTP traces endpoint")
    username: str = Field(default="", description="Basic-auth username")
    password: str = Field(default="", description="Basic-auth password")
    service_name: str = Field(default="aiproxy", description="service.name")
    sample_rate: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Root sampling ratio"
    )
    excluded_urls: list[str] = Field(
        default_factory=lambda: ["/metrics", "/health"],
        description="Paths skipped by the FastAPI instrumentor",
    )
