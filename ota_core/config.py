from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import Dict, List, Optional


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./ota_core.db",
        alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Blocking DB work is pushed to a thread when enabled
    offload_blocking_io: bool = Field(default=True, alias="OFFLOAD_BLOCKING_IO")

    # Admin surface auth (tokens are issued by the external auth service)
    jwt_secret: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    # CORS - comma-separated
    allowed_origins: str = Field(default="http://localhost:3000,http://localhost:5173", alias="ALLOWED_ORIGINS")

    # ==============================================
    # Inbound webhooks
    # ==============================================
    # JSON map: channel -> default webhook secret (per-hotel secrets live in channel_configurations)
    channel_secrets: Dict[str, str] = Field(default_factory=dict, alias="CHANNEL_SECRETS")

    # Only for local development, never in production
    webhook_allow_unsigned: bool = Field(default=False, alias="WEBHOOK_ALLOW_UNSIGNED")

    inbound_max_body_bytes: int = Field(default=5 * 1024 * 1024, alias="INBOUND_MAX_BODY_BYTES")
    inbound_claim_stale_seconds: int = Field(default=60, alias="INBOUND_CLAIM_STALE_SECONDS")
    webhook_rate_limit: str = Field(default="300/minute", alias="WEBHOOK_RATE_LIMIT")

    # ==============================================
    # Event bus
    # ==============================================
    bus_worker_count: int = Field(default=4, alias="BUS_WORKER_COUNT")
    bus_partition_high_water: int = Field(default=10_000, alias="BUS_PARTITION_HIGH_WATER")
    bus_default_retry_delay_seconds: float = Field(default=5.0, alias="BUS_DEFAULT_RETRY_DELAY_SECONDS")
    dead_letter_capacity: int = Field(default=50_000, alias="DEAD_LETTER_CAPACITY")
    shutdown_grace_seconds: float = Field(default=10.0, alias="SHUTDOWN_GRACE_SECONDS")

    # ==============================================
    # Outbound dispatch
    # ==============================================
    # JSON map: channel -> {"requests_per_second": x, "burst": y}
    channel_rate_limits: Dict[str, Dict[str, float]] = Field(default_factory=dict, alias="CHANNEL_RATE_LIMITS")

    dispatch_base_delay_seconds: float = Field(default=2.0, alias="DISPATCH_BASE_DELAY_SECONDS")
    dispatch_max_delay_seconds: float = Field(default=300.0, alias="DISPATCH_MAX_DELAY_SECONDS")
    dispatch_max_attempts: int = Field(default=5, alias="DISPATCH_MAX_ATTEMPTS")
    dispatch_deadline_seconds: float = Field(default=30.0, alias="DISPATCH_DEADLINE_SECONDS")
    rate_limit_acquire_timeout_seconds: float = Field(default=5.0, alias="RATE_LIMIT_ACQUIRE_TIMEOUT_SECONDS")
    booking_lock_timeout_seconds: float = Field(default=10.0, alias="BOOKING_LOCK_TIMEOUT_SECONDS")

    circuit_failure_threshold: int = Field(default=5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_cool_off_seconds: float = Field(default=60.0, alias="CIRCUIT_COOL_OFF_SECONDS")

    # ==============================================
    # Payload store
    # ==============================================
    payload_truncate_bytes: int = Field(default=1024 * 1024, alias="PAYLOAD_TRUNCATE_BYTES")

    retention_restricted_active_days: int = Field(default=7 * 365, alias="RETENTION_RESTRICTED_ACTIVE_DAYS")
    retention_restricted_archive_days: int = Field(default=2 * 365, alias="RETENTION_RESTRICTED_ARCHIVE_DAYS")
    retention_confidential_active_days: int = Field(default=3 * 365, alias="RETENTION_CONFIDENTIAL_ACTIVE_DAYS")
    retention_confidential_archive_days: int = Field(default=365, alias="RETENTION_CONFIDENTIAL_ARCHIVE_DAYS")
    retention_internal_active_days: int = Field(default=365, alias="RETENTION_INTERNAL_ACTIVE_DAYS")
    retention_internal_archive_days: int = Field(default=90, alias="RETENTION_INTERNAL_ARCHIVE_DAYS")
    retention_public_active_days: int = Field(default=90, alias="RETENTION_PUBLIC_ACTIVE_DAYS")

    retention_cron: str = Field(default="0 2 * * *", alias="RETENTION_CRON")
    retention_batch_size: int = Field(default=1000, alias="RETENTION_BATCH_SIZE")
    archive_location: str = Field(default="./archives/payloads", alias="ARCHIVE_LOCATION")

    # ==============================================
    # Amendments
    # ==============================================
    auto_approve_max_date_shift_days: int = Field(default=7, alias="AUTO_APPROVE_MAX_DATE_SHIFT_DAYS")
    auto_approve_max_rate_delta_percent: float = Field(default=10.0, alias="AUTO_APPROVE_MAX_RATE_DELTA_PERCENT")
    amendment_ttl_hours: int = Field(default=48, alias="AMENDMENT_TTL_HOURS")
    amendment_expiry_interval_minutes: int = Field(default=15, alias="AMENDMENT_EXPIRY_INTERVAL_MINUTES")

    # Booking store read interface (reconciliation / amendment snapshots)
    booking_snapshot_url: str = Field(default="", alias="BOOKING_SNAPSHOT_URL")
    booking_snapshot_timeout_seconds: float = Field(default=5.0, alias="BOOKING_SNAPSHOT_TIMEOUT_SECONDS")

    # ==============================================
    # Monitoring thresholds
    # ==============================================
    alert_sync_failure_rate: float = Field(default=0.20, alias="ALERT_SYNC_FAILURE_RATE")
    alert_p95_latency_ms: float = Field(default=5000.0, alias="ALERT_P95_LATENCY_MS")
    metrics_retention_minutes: int = Field(default=24 * 60, alias="METRICS_RETENTION_MINUTES")

    # Start bus workers and scheduler inside the API process
    workers_enabled: bool = Field(default=True, alias="WORKERS_ENABLED")

    @field_validator('jwt_secret')
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """JWT_SECRET must be strong enough to verify tokens"""
        if not v:
            raise ValueError("JWT_SECRET is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    def retention_days(self, data_level: str) -> Dict[str, Optional[int]]:
        """Default {active_days, archive_after_days} for a classification level"""
        table = {
            "restricted": (self.retention_restricted_active_days, self.retention_restricted_archive_days),
            "confidential": (self.retention_confidential_active_days, self.retention_confidential_archive_days),
            "internal": (self.retention_internal_active_days, self.retention_internal_archive_days),
            "public": (self.retention_public_active_days, None),
        }
        active, archive = table.get(data_level, table["public"])
        return {"active_days": active, "archive_after_days": archive}

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
