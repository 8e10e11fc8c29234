"""Central environment-driven settings for the course payment service.

Loaded once per process at startup. Every value can be overridden through
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "course-payment"
    log_level: str = "INFO"
    postgres_dsn: str
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    gateway_api_key: str
    gateway_secret_key: str
    gateway_base_url: str = "https://sandbox-api.iyzipay.com"
    gateway_auth_scheme: str = "IYZWSv2"
    gateway_nonce_header: str = "x-provider-rnd"
    gateway_timeout_seconds: float = 30.0
    gateway_locale: str = "tr"
    gateway_currency: str = "TRY"
    gateway_callback_url: str = "http://localhost:8083/api/payment/3ds/callback"
    payment_provider: str = "IYZICO"

    catalog_url: str = "http://course-service:8082/course-service"
    catalog_timeout_seconds: float = 3.0
    catalog_breaker_failure_rate: float = 50.0
    catalog_breaker_window_size: int = 10
    catalog_breaker_minimum_calls: int = 5
    catalog_breaker_open_seconds: float = 30.0
    catalog_breaker_half_open_calls: int = 3

    stale_payment_max_age_seconds: int = 1800
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
