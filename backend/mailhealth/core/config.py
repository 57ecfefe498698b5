"""Core configuration settings loaded from environment variables."""
from functools import lru_cache
from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Core
    APP_ENV: Literal["development", "staging", "production"] = "development"
    APP_NAME: str = "Mail Health Checker"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # DNS resolution
    # Empty list means the system resolver configuration (/etc/resolv.conf).
    DNS_NAMESERVERS: list[str] = []
    DNS_QUERY_TIMEOUT: float = 2.5  # seconds, per live query
    DNS_CACHE_TTL_SECONDS: int = 10 * 60
    DNS_MAX_CONCURRENT_QUERIES: int = 128
    DNS_TXT_RETRIES: int = 1

    # Blacklists
    BLACKLIST_CACHE_TTL_SECONDS: int = 6 * 60 * 60
    BLACKLIST_JITTER_MAX_SECONDS: float = 0.15

    # SPF
    SPF_MAX_LOOKUPS: int = 10  # RFC 7208 section 4.6.4
    SPF_VOID_LOOKUP_CHECK_LIMIT: int = 5

    # DKIM selectors probed by brute force
    DKIM_SELECTORS: list[str] = [
        "google", "default", "k1", "s1", "mail", "selector1", "selector2",
        "mandrill", "smtp", "pic", "dkim", "uk"
    ]

    # Web server / TLS
    HTTP_TIMEOUT_SECONDS: float = 3.0
    TLS_TIMEOUT_SECONDS: float = 2.5
    CERT_EXPIRY_WARNING_DAYS: int = 14
    HTTP_USER_AGENT: str = "MailHealthChecker/1.0 (+passive diagnostics)"

    # Scoring: score = 100 * passed / total - SCORE_ERROR_WEIGHT * errors
    SCORE_ERROR_WEIGHT: float = 5.0

    # Request boundary
    # Keep below the hosting platform's execution ceiling.
    GLOBAL_TIMEOUT_SECONDS: float = 8.5
    BULK_MAX_DOMAINS: int = 50
    BULK_CONCURRENCY: int = 5


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
