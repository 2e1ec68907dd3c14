"""
Harness configuration using Pydantic Settings

Reads connection, pool, worker and logging settings from the environment
(or a .env file). Profiles themselves are not configured here; see
pgstress.models.profile_config.
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Harness settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Postgres Connection Settings (load-generating principal)
    # ========================================================================
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DATABASE: str = "postgres"
    POSTGRES_USER: str = "pgstress_load"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SSL: bool = False

    # ========================================================================
    # Monitoring Principal
    # ========================================================================
    # Read-mostly role the observability collector uses. The harness only
    # connects with it during pre-flight, to confirm the instrumentation views
    # are readable. Leave empty to skip that check.
    MONITOR_USER: str = ""
    MONITOR_PASSWORD: str = ""

    # ========================================================================
    # Connection Pool Settings
    # ========================================================================
    # Hard ceiling on connections the harness opens, across all profiles.
    POOL_MAX_CONNECTIONS: int = 50
    # Slots inside the ceiling that stress profiles may never use.
    POOL_RESERVED_HEADROOM: int = 2
    # 0 means acquire fails immediately when the pool is at its ceiling.
    POOL_ACQUIRE_TIMEOUT_SECONDS: float = 0.0
    CONNECT_TIMEOUT_SECONDS: float = 10.0

    # ========================================================================
    # Worker Settings
    # ========================================================================
    STATEMENT_TIMEOUT_SECONDS: float = 30.0
    BACKOFF_BASE_SECONDS: float = 0.1
    BACKOFF_MAX_SECONDS: float = 5.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 15.0
    STATS_INTERVAL_SECONDS: float = 10.0

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    LOG_FORMAT: str = (
        "%(asctime)s - %(name)s - %(levelname)s - [%(profile)s/%(worker_id)s] %(message)s"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        return str(v or "INFO").strip().upper()

    @model_validator(mode="after")
    def _validate_pool(self):
        if self.POOL_MAX_CONNECTIONS < 1:
            raise ValueError("POOL_MAX_CONNECTIONS must be >= 1")
        if not 0 <= self.POOL_RESERVED_HEADROOM < self.POOL_MAX_CONNECTIONS:
            raise ValueError(
                "POOL_RESERVED_HEADROOM must be >= 0 and < POOL_MAX_CONNECTIONS"
            )
        if self.BACKOFF_BASE_SECONDS <= 0 or self.BACKOFF_MAX_SECONDS < self.BACKOFF_BASE_SECONDS:
            raise ValueError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS > 0")
        return self


# Create global settings instance
settings = Settings()
