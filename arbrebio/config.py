from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field, model_validator
from functools import lru_cache
from pathlib import Path
import secrets

# Get the project root (repository checkout)
PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):

    # Application
    app_env: str = "development"
    app_debug: bool = False
    site_name: str = "Arbre Bio Africa"
    site_url: str = "https://arbrebio.com"  # Base URL for links in emails
    frontend_url: str = "http://localhost:4321"

    # PostgreSQL Configuration
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "arbrebio_db"
    postgres_user: str = "arbrebio_user"
    postgres_password: str = ""

    # SQLite (local development and tests)
    use_sqlite: bool = False
    sqlite_url: str = "sqlite+aiosqlite:///./data/arbrebio.db"

    @computed_field
    @property
    def database_url(self) -> str:
        """Return the appropriate database URL based on configuration."""
        if self.use_sqlite:
            return self.sqlite_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # Database pooling (PostgreSQL)
    db_pool_size: int = 10
    db_max_overflow: int = 5
    db_pool_recycle: int = 1800

    # Signing key for unsubscribe links, must be stable across restarts and workers
    secret_key: str = ""

    # Admin API keys: key id -> sha256 hex digest of the key
    admin_api_keys: dict[str, str] = {}
    admin_revoked_key_ids: list[str] = []

    # Security Headers
    security_headers_enabled: bool = True
    security_csp_enabled: bool = True
    security_csp_directives: str = (
        "default-src 'none'; "
        "frame-ancestors 'none'; "
        "base-uri 'none'"
    )
    security_hsts_enabled: bool = True
    security_hsts_max_age: int = 31536000  # 1 year
    security_hsts_include_subdomains: bool = True
    security_x_frame_options: str = "DENY"
    security_x_content_type_options: bool = True
    security_referrer_policy: str = "strict-origin-when-cross-origin"

    # Email Configuration
    email_enabled: bool = False  # Default to False so app works without email
    email_provider: str = "sendgrid"  # "smtp", "resend", "sendgrid"
    email_from_address: str = "farms@arbrebio.com"
    email_from_name: str = "Arbre Bio Africa"
    admin_email: str = "farms@arbrebio.com"

    # SMTP Settings
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    # Hosted email APIs
    resend_api_key: str = ""
    sendgrid_api_key: str = ""
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    email_http_timeout: float = 15.0

    # Form rate limiting (per client IP)
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 60
    rate_limit_max_buckets: int = 10000  # Prune expired buckets beyond this size
    redis_url: str = ""  # Shared counter across instances when set

    # Newsletter
    newsletter_default_source: str = "website"
    newsletter_batch_size: int = 50
    newsletter_batch_delay_seconds: float = 1.0
    stats_cache_max_age: int = 300

    @model_validator(mode="after")
    def require_secret_key_in_production(self):
        if not self.secret_key:
            if self.app_env == "production":
                raise ValueError("SECRET_KEY must be set in production, unsubscribe links are signed with it")
            self.secret_key = secrets.token_urlsafe(32)  # Generate random if not set
        return self

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Singleton instance for easy import
settings = get_settings()
