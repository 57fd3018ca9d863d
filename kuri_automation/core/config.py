"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

from typing import Optional

from croniter import croniter
from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


LINK_DECIMALS = 10 ** 18


class Settings(BaseSettings):
    """Automation agent settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Kuri Automation"
    app_version: str = "0.1.0"
    environment: str = "development"

    # Chain
    rpc_url: str = ""
    private_key: str = Field(..., repr=False)
    chain_id: int = 8453  # Base
    vrf_coordinator: str = "0xd5D517aBE5cF79B7e95eC98dB0f0277788aFF634"
    subscription_manager: str = "0xfe9e01aB2d887Ebfc8cb6C7e7bD04cCb659F9e6B"

    # Indexer
    indexer_url: str = Field(
        default="https://indexer.dev.hyperindex.xyz/11c60b7/v1/graphql",
        validation_alias=AliasChoices("indexer_url", "subgraph_url"),
    )
    indexer_timeout: int = 30  # seconds

    # Scheduler intervals (seconds)
    raffle_check_interval: int = 300
    subscription_check_interval: int = 7200
    tx_poll_interval: int = 30

    # Cron schedules; when set they replace the matching interval above
    raffle_cron: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("raffle_cron", "cron_schedule"),
    )
    subscription_cron: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("subscription_cron", "vrf_check_interval"),
    )

    # Read retry policy
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0

    # Transactions
    tx_confirmation_blocks: int = 2
    tx_max_retries: int = 3
    tx_receipt_timeout: int = 300  # seconds

    # Raffles
    raffle_cooldown_seconds: int = 3600
    onchain_winner_check: bool = True

    # VRF subscription funding (amounts in juels)
    min_subscription_balance: int = LINK_DECIMALS // 10
    subscription_top_up_amount: int = 5 * LINK_DECIMALS
    funding_max_retries: int = 3
    funding_settle_delay: float = 5.0
    funded_subscriptions_file: str = "data/funded-subscriptions.json"

    # Dashboard
    dashboard_enabled: bool = True
    dashboard_host: str = "127.0.0.1"
    dashboard_port: int = 3000
    dashboard_update_interval: int = 5  # seconds

    # Monitoring
    health_check_interval: int = 60
    metrics_analysis_interval: int = 300
    gas_alert_threshold: int = 500_000
    error_rate_threshold: float = 0.1
    confirmation_time_threshold: float = 5.0  # seconds
    network_latency_threshold: float = 1.0  # seconds

    # Reports
    reports_dir: str = "reports"
    report_retention_days: int = 30

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        if not v.startswith("0x"):
            raise ValueError("PRIVATE_KEY must start with 0x")
        if len(v) != 66:
            raise ValueError(f"PRIVATE_KEY must be 66 characters long, got {len(v)}")
        try:
            int(v[2:], 16)
        except ValueError:
            raise ValueError("PRIVATE_KEY must be hex encoded")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("raffle_cron", "subscription_cron")
    @classmethod
    def validate_cron(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v

    @field_validator("tx_confirmation_blocks", "retry_max_attempts", "tx_max_retries", "funding_max_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        try:
            _settings = Settings()
        except ValidationError as e:
            errors = [".".join(str(part) for part in err["loc"]) + ": " + err["msg"] for err in e.errors()]
            raise ConfigurationError("Invalid automation settings", {"errors": errors}) from e
    return _settings
