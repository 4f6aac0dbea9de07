"""Shared configuration management for the reconciliation engine.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_PRICE_MAJOR_THRESHOLD=0.2
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-reconciliation-engine",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Extraction provider configuration
    extraction_provider: Literal["openai", "ollama"] = Field(
        default="openai",
        description="Extraction provider: openai (cloud API), ollama (self-hosted vision LLM)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for document understanding",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5vl:7b",
        description="Ollama vision model to use for extraction",
    )
    extraction_confidence_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Extractions below this confidence are flagged lowConfidence",
    )

    # Timeouts and retries for the extraction provider
    extraction_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single extraction provider call",
    )
    extraction_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Max attempts for transient (timeout/rate-limited) extraction failures",
    )

    # Timeouts and retries for the persistent store
    store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for a single persistent-store call",
    )
    store_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Max attempts for transient persistent-store failures",
    )

    # Backoff shared by both retry policies
    retry_backoff_initial: float = Field(default=1.0, ge=0, description="Initial backoff (s)")
    retry_backoff_max: float = Field(default=30.0, ge=0, description="Backoff ceiling (s)")
    retry_backoff_jitter: float = Field(default=1.0, ge=0, description="Max random jitter (s)")

    # Document intake
    intake_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum accepted document size in bytes",
    )
    intake_allowed_mime_types: list[str] = Field(
        default=[
            "application/pdf",
            "image/png",
            "image/jpeg",
            "image/webp",
            "image/gif",
        ],
        description="Document mime types accepted for extraction",
    )

    # Batch processing
    batch_concurrency: int = Field(
        default=4,
        ge=1,
        description="Max documents processed concurrently within a batch",
    )
    batch_retention_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="How long a finished batch stays available for polling",
    )

    # Price reconciliation
    price_minor_threshold: float = Field(
        default=0.05,
        gt=0,
        description="Absolute deviation at or above which a price change is Minor",
    )
    price_major_threshold: float = Field(
        default=0.15,
        gt=0,
        description="Absolute deviation at or above which a price change is Major",
    )

    # Supplier matching
    supplier_similarity_threshold: float = Field(
        default=85.0,
        ge=0,
        le=100,
        description="rapidfuzz score (0-100) at or above which a supplier is suggested",
    )
    auto_create_suppliers: bool = Field(
        default=True,
        description="Create a supplier record when no existing supplier matches",
    )

    # Lifecycle
    auto_finalize: bool = Field(
        default=False,
        description="Finalize validated invoices automatically when no Major price alert exists",
    )

    # Validation tolerances
    line_total_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Allowed difference between quantity x unit price and a declared line total",
    )
    totals_tolerance: Decimal = Field(
        default=Decimal("1.00"),
        ge=0,
        description="Allowed difference between subtotal + tax and total (warning only)",
    )
    expected_tax_rate: Decimal | None = Field(
        default=None,
        description="Expected tax rate on the subtotal, e.g. 0.16 (warning only, unset skips)",
    )

    # Remission reconciliation
    remission_date_window_days: int = Field(
        default=7,
        ge=0,
        description="Max days between invoice and delivery for proximity matching",
    )
    remission_amount_tolerance_pct: float = Field(
        default=0.02,
        ge=0,
        description="Max relative amount difference for proximity matching",
    )

    # Storage configuration (S3-compatible object storage for original documents)
    storage_enabled: bool = Field(
        default=False,
        description="Archive original documents in S3-compatible storage (MinIO)",
    )
    storage_endpoint: str = Field(
        default="localhost:9000",
        description="S3-compatible storage endpoint (host:port)",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoices",
        description="Bucket name for original invoice documents",
    )
    storage_secure: bool = Field(
        default=False,
        description="Use HTTPS for storage connections",
    )
    storage_url_expiry_seconds: int = Field(
        default=900,
        gt=0,
        description="Lifetime of presigned document preview URLs",
    )

    @model_validator(mode="after")
    def _check_price_thresholds(self) -> "Settings":
        if self.price_minor_threshold >= self.price_major_threshold:
            raise ValueError("price_minor_threshold must be lower than price_major_threshold")
        return self


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
