"""
Shop Sync Pipeline
Centralized Configuration Management

Pydantic settings for every subsystem: database, upstream platform access,
job scheduling and daily aggregation. Each section reads its own environment
prefix so deployments can override single values without touching the rest.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)
    
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="shopsync", alias="database", description="Database name")
    user: str = Field(default="shopsync", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Database URL (overrides host/port)")
    
    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class ShopifySettings(BaseSettings):
    """Upstream platform access and bulk export tuning"""
    
    model_config = SettingsConfigDict(env_prefix="SHOPIFY_")
    
    api_version: str = Field(default="2024-10", description="Admin API version")
    shops: List[str] = Field(
        default=[
            "pompdelux-da.myshopify.com",
            "pompdelux-de.myshopify.com",
            "pompdelux-nl.myshopify.com",
            "pompdelux-int.myshopify.com",
            "pompdelux-chf.myshopify.com",
        ],
        description="Tenants to sync",
    )
    access_tokens: Dict[str, SecretStr] = Field(
        default_factory=dict,
        description="Access token per shop domain (JSON object)",
    )
    request_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")
    max_retries: int = Field(default=3, description="Attempts for transient upstream errors")
    poll_interval_seconds: float = Field(default=10.0, description="Bulk operation poll interval")
    max_poll_attempts: int = Field(default=360, description="Polls before a bulk operation times out")
    conflict_cancel_wait_seconds: float = Field(
        default=2.0,
        description="Pause between checks while a cancelled bulk operation winds down",
    )
    conflict_max_checks: int = Field(
        default=30,
        description="Checks before giving up on a bulk operation that will not finish cancelling",
    )
    conflict_max_submits: int = Field(
        default=5,
        description="Submissions attempted while the shop's bulk operation slot is busy",
    )
    upsert_chunk_size: int = Field(default=500, description="Rows per upsert statement")
    
    # Currency normalisation
    base_currency: str = Field(default="DKK", description="Currency all *_base amounts use")
    currency_rates: Dict[str, Decimal] = Field(
        default={"DKK": Decimal("1.0"), "EUR": Decimal("7.46"), "CHF": Decimal("6.84")},
        description="Units of base currency per unit of each currency",
    )
    default_tax_rates: Dict[str, Decimal] = Field(
        default={"DKK": Decimal("0.25"), "EUR": Decimal("0.19"), "CHF": Decimal("0.077")},
        description="Fallback VAT rate when an order carries no tax lines",
    )
    
    def token_for(self, shop: str) -> Optional[str]:
        """Access token for a shop, if configured"""
        token = self.access_tokens.get(shop)
        return token.get_secret_value() if token else None


class SchedulerSettings(BaseSettings):
    """Job scheduling and worker budgets"""
    
    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")
    
    batch_size: int = Field(default=20, description="Pending jobs selected per pass")
    stale_after_seconds: int = Field(default=120, description="Running jobs older than this are reclaimed")
    stale_after_overrides: Dict[str, int] = Field(
        default={"refunds": 300},
        description="Per object type staleness threshold",
    )
    parallel_limits: Dict[str, int] = Field(
        default={"orders": 0, "skus": 0, "refunds": 3, "shipping-discounts": 3},
        description="Concurrent shops per object type, 0 means unrestricted",
    )
    invocation_budget_seconds: float = Field(default=110.0, description="Wall-clock budget per worker invocation")
    wave_pause_seconds: float = Field(default=1.0, description="Pause between jobs of one shop")
    auto_enqueue_dependents: bool = Field(
        default=True,
        description="Create dependent jobs when a prerequisite completes",
    )
    resumable_batch_size: int = Field(default=50, description="Items per resumable worker invocation")
    item_pause_seconds: float = Field(default=0.5, description="Pause between per-item upstream calls")
    error_max_length: int = Field(default=150, description="Stored error message length")
    
    def stale_threshold(self, object_type: str) -> int:
        """Staleness threshold in seconds for an object type"""
        return self.stale_after_overrides.get(object_type, self.stale_after_seconds)
    
    def parallel_limit(self, object_type: str) -> int:
        """Concurrent shop limit for an object type (0 = unrestricted)"""
        return self.parallel_limits.get(object_type, 0)


class AggregationSettings(BaseSettings):
    """Daily aggregation configuration"""
    
    model_config = SettingsConfigDict(env_prefix="AGGREGATION_")
    
    page_size: int = Field(default=1000, description="Rows fetched per query page")
    standard_offset_hours: int = Field(default=1, description="Local UTC offset outside summer time")
    max_reaggregation_depth: int = Field(default=2, description="Generations of stale-date re-aggregation")
    refund_lookback_days: int = Field(
        default=0,
        description="Extra days before the target re-aggregated by the daily trigger",
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""
    
    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)
    
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings
    
    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )
    
    # Application
    app_name: str = Field(default="shopsync", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    
    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    
    # Version
    version: str = Field(default="1.0.0", description="Application version")
    
    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    shopify: ShopifySettings = Field(default_factory=ShopifySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    
    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()
    
    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.
    
    Uses LRU cache to ensure settings are only loaded once.
    
    Returns:
        Settings: Application settings instance
    """
    return Settings()
