"""
Visit Analytics — Configuration via environment variables.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """All settings read from env / .env file."""

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./visit_analytics.db",
        description="Async SQLAlchemy DB URL",
    )

    # Redis (event queue + view counters)
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(
        default=5.0, description="Seconds before a Redis call is abandoned"
    )

    # Analytics archival
    analytics_enable: bool = Field(default=True)
    analytics_timezone: str = Field(
        default="UTC", description="IANA zone used to bucket archive dates"
    )
    analytics_precision_days: int = Field(
        default=30, description="Days raw page views are kept before archival (0 = never archive)"
    )
    analytics_retention_days: int = Field(
        default=365, description="Days archive rows are kept (0 = forever)"
    )

    # Flush pipeline
    analytics_queue_key: str = Field(default="np:analytics:event")
    analytics_view_count_key: str = Field(default="np:view_count:all")
    analytics_batch_size: int = Field(default=500)
    analytics_flush_lock_key: str = Field(default="np:analytics:flush:lock")
    analytics_flush_lock_ttl_ms: int = Field(
        default=30_000,
        description="Flush lease TTL, renewed between pipeline steps (upper bound for one step)",
    )
    analytics_flush_interval: int = Field(
        default=300, description="Seconds between scheduled flushes (0 = disabled)"
    )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
