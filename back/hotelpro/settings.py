from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from the environment, `config.env` or `.env` (repository root
    first, then the working directory).
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="hotelpro", validation_alias="DB_USER")
    db_password: str = Field(default="hotelpro", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="hotelpro", validation_alias="DB_NAME")
    # Full URL override, e.g. "sqlite://" for local runs
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    hq_secret_key: str = Field(default="CHANGE_THIS_HQ_SECRET", validation_alias="HQ_SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=480, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    hq_token_expire_minutes: int = Field(default=480, validation_alias="HQ_TOKEN_EXPIRE_MINUTES")

    # Customer access code flow
    tenant_cookie_max_age_seconds: int = Field(default=4 * 60 * 60, validation_alias="TENANT_COOKIE_MAX_AGE")
    access_code_min_delay_ms: int = Field(default=500, validation_alias="ACCESS_CODE_MIN_DELAY_MS")
    access_code_max_delay_ms: int = Field(default=1000, validation_alias="ACCESS_CODE_MAX_DELAY_MS")
    access_code_rate_limit: int = Field(default=10, validation_alias="ACCESS_CODE_RATE_LIMIT")
    access_code_rate_window_seconds: int = Field(default=60, validation_alias="ACCESS_CODE_RATE_WINDOW")
    # Reverse proxies in front of the app; 0 ignores X-Forwarded-For
    trusted_proxy_hops: int = Field(default=0, validation_alias="TRUSTED_PROXY_HOPS")
    # Comma-separated substrings of user agents to reject
    blocked_user_agents: str = Field(default="", validation_alias="BLOCKED_USER_AGENTS")

    # Entitlement snapshot freshness
    entitlement_admin_stale_hours: int = Field(default=24, validation_alias="ENTITLEMENT_ADMIN_STALE_HOURS")
    entitlement_operational_stale_hours: int = Field(
        default=72, validation_alias="ENTITLEMENT_OPERATIONAL_STALE_HOURS"
    )

    # HQ bootstrap account, created at startup when both are set
    hq_admin_email: str = Field(default="", validation_alias="HQ_ADMIN_EMAIL")
    hq_admin_password: str = Field(default="", validation_alias="HQ_ADMIN_PASSWORD")

    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", validation_alias="STRIPE_WEBHOOK_SECRET")
    stripe_currency: str = Field(default="inr", validation_alias="STRIPE_CURRENCY")
    base_url: str = Field(default="http://localhost:3000", validation_alias="BASE_URL")

    uploads_dir: str = Field(default=str(_PROJECT_ROOT / "back" / "uploads"), validation_alias="UPLOADS_DIR")

    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
