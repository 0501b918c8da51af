from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="depositwatch_state.db", alias="STATE_DB_PATH")

    batch_size: int = Field(default=50, alias="BATCH_SIZE")
    max_retries: int = Field(default=10, alias="MAX_RETRIES")
    request_delay_seconds: float = Field(default=1.0, alias="REQUEST_DELAY_SECONDS")
    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    parallel_currencies: bool = Field(default=False, alias="PARALLEL_CURRENCIES")

    required_confirmations_btc: int = Field(default=2, alias="REQUIRED_CONFIRMATIONS_BTC")
    required_confirmations_eth: int = Field(default=12, alias="REQUIRED_CONFIRMATIONS_ETH")
    required_confirmations_doge: int = Field(default=2, alias="REQUIRED_CONFIRMATIONS_DOGE")

    mempool_base_url: str = Field(default="https://mempool.space/api", alias="MEMPOOL_BASE_URL")
    sochain_base_url: str = Field(default="https://sochain.com/api/v2", alias="SOCHAIN_BASE_URL")
    etherscan_base_url: str = Field(
        default="https://api.etherscan.io", alias="ETHERSCAN_BASE_URL"
    )
    etherscan_api_key: SecretStr | None = Field(default=None, alias="ETHERSCAN_API_KEY")

    batch_status_ttl_seconds: int = Field(default=3600, alias="BATCH_STATUS_TTL_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    metrics_exporter: str = Field(default="none", alias="METRICS_EXPORTER")
    otlp_endpoint: str | None = Field(default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    prometheus_port: int = Field(default=9464, alias="PROMETHEUS_PORT")

    @field_validator("batch_size")
    def validate_batch_size(cls, value: int) -> int:
        if value < 1 or value > 500:
            raise ValueError("BATCH_SIZE must be between 1 and 500")
        return value

    @field_validator("max_retries")
    def validate_max_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_RETRIES must be >= 1")
        return value

    @field_validator("request_delay_seconds")
    def validate_request_delay_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("REQUEST_DELAY_SECONDS must be >= 0")
        return value

    @field_validator("http_timeout_seconds")
    def validate_http_timeout_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HTTP_TIMEOUT_SECONDS must be > 0")
        return value

    @field_validator(
        "required_confirmations_btc",
        "required_confirmations_eth",
        "required_confirmations_doge",
    )
    def validate_required_confirmations(cls, value: int) -> int:
        if value < 1:
            raise ValueError("REQUIRED_CONFIRMATIONS_* must be >= 1")
        return value

    @field_validator("mempool_base_url", "sochain_base_url", "etherscan_base_url")
    def validate_base_url(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("explorer base URLs must start with http:// or https://")
        return cleaned

    @field_validator("batch_status_ttl_seconds")
    def validate_batch_status_ttl_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("BATCH_STATUS_TTL_SECONDS must be > 0")
        return value

    @field_validator("metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError("METRICS_EXPORTER must be one of: none, otlp, prometheus")
        return normalized

    def etherscan_key(self) -> str | None:
        if self.etherscan_api_key is None:
            return None
        value = self.etherscan_api_key.get_secret_value().strip()
        return value or None
