"""Application settings and configuration.

This module defines all configuration options for the Chorus Upload service.
Settings are loaded from environment variables with sensible defaults and are
treated as immutable for the lifetime of the process.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Chorus Upload", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Ledger node used to resolve account posting keys and reputation
    ledger_rpc_url: str = Field(default="https://api.steemit.com", alias="LEDGER_RPC_URL")
    ledger_rpc_timeout_seconds: float = Field(default=10.0, alias="LEDGER_RPC_TIMEOUT_SECONDS")
    ledger_address_prefix: str = Field(default="STM", alias="LEDGER_ADDRESS_PREFIX")

    # Object storage
    s3_bucket: str = Field(default="uploads", alias="S3_BUCKET")
    s3_region: str | None = Field(default=None, alias="S3_REGION")
    s3_endpoint_url: str | None = Field(default=None, alias="S3_ENDPOINT_URL")

    # Public URL components returned to uploaders
    public_protocol: str = Field(default="https", alias="PUBLIC_PROTOCOL")
    public_host: str = Field(default="localhost", alias="PUBLIC_HOST")
    public_port: int = Field(default=443, alias="PUBLIC_PORT")

    # Reputation gate (log10-scaled reputation)
    upload_min_reputation: int = Field(default=10, alias="UPLOAD_MIN_REPUTATION")

    # Per-IP request quotas
    upload_requests_per_minute: int = Field(default=60, alias="UPLOAD_REQUESTS_PER_MINUTE")
    upload_requests_per_hour: int = Field(default=300, alias="UPLOAD_REQUESTS_PER_HOUR")
    upload_requests_per_day: int = Field(default=900, alias="UPLOAD_REQUESTS_PER_DAY")

    # Per-account data volume quotas (megabytes)
    upload_megs_per_minute: float = Field(default=30, alias="UPLOAD_MEGS_PER_MINUTE")
    upload_megs_per_hour: float = Field(default=300, alias="UPLOAD_MEGS_PER_HOUR")
    upload_megs_per_day: float = Field(default=600, alias="UPLOAD_MEGS_PER_DAY")
    upload_megs_per_week: float = Field(default=1500, alias="UPLOAD_MEGS_PER_WEEK")

    # Multipart handling
    upload_form_limit_bytes: int = Field(default=20 * 1000 * 1024, alias="UPLOAD_FORM_LIMIT_BYTES")

    # Only enable behind a proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = Field(default=False, alias="TRUST_FORWARDED_FOR")

    # Shared rate-limit counters for multi-process deployments
    rate_limit_redis_url: str | None = Field(default=None, alias="RATE_LIMIT_REDIS_URL")

    # Deterministic signer for test environments only
    allow_test_signer_key: bool = Field(default=False, alias="ALLOW_TEST_SIGNER_KEY")
    test_signer_seed: str = Field(default="", alias="TEST_SIGNER_SEED")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def public_base_url(self) -> str:
        """Return the scheme/host/port prefix used for uploaded object URLs."""
        return f"{self.public_protocol}://{self.public_host}:{self.public_port}"

    @property
    def request_limits(self) -> dict[str, int]:
        """Return the per-IP request quotas keyed by window name."""
        return {
            "minute": self.upload_requests_per_minute,
            "hour": self.upload_requests_per_hour,
            "day": self.upload_requests_per_day,
        }

    @property
    def data_limits(self) -> dict[str, float]:
        """Return the per-account megabyte quotas keyed by window name."""
        return {
            "minute": self.upload_megs_per_minute,
            "hour": self.upload_megs_per_hour,
            "day": self.upload_megs_per_day,
            "week": self.upload_megs_per_week,
        }


settings = Settings()
