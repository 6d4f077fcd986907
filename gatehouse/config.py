"""Configuration settings for Gatehouse"""

from pydantic_settings import BaseSettings
from typing import List
import os


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    PORT: int = int(os.getenv("PORT", "8000"))
    SECRET_KEY: str = "change-me"

    # Tokens
    JWT_SECRET_KEY: str = "change-me-access"
    JWT_REFRESH_SECRET_KEY: str = "change-me-refresh"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    TWO_FA_TOKEN_EXPIRE_MINUTES: int = 5
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./gatehouse.db")

    # Redis (rate limiting, optional permission cache / token deny-list backend)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Encryption of stored TOTP secrets
    ENCRYPTION_KEY: str = "change-me-encryption"

    # Credentials and lockout
    PASSWORD_MIN_LENGTH: int = 8
    BCRYPT_ROUNDS: int = 12
    MAX_FAILED_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 30

    # Two-factor authentication
    TWO_FA_ISSUER: str = "Gatehouse"
    TOTP_VALID_WINDOW: int = 1
    BACKUP_CODE_COUNT: int = 8

    # Permission cache: "memory" or "redis"
    PERMISSION_CACHE_BACKEND: str = "memory"
    PERMISSION_CACHE_TTL_SECONDS: int = 300

    # Tenant resolution
    BASE_DOMAIN: str = "localhost"
    RESERVED_SUBDOMAINS: str = ""  # Comma-separated additions to the built-in list
    SUBDOMAIN_MAX_ATTEMPTS: int = 1000

    # Invitations
    INVITATION_EXPIRY_DAYS: int = 7

    # Email
    MAIL_API_URL: str = "http://mailer:8001"
    MAIL_API_KEY: str = ""  # Notifications are skipped when empty
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "noreply@gatehouse.local")
    FRONTEND_URL: str = "http://localhost:3000"  # Used to build invitation and reset links

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def reserved_subdomains_list(self) -> List[str]:
        """Parse operator-configured reserved subdomains"""
        return [s.strip().lower() for s in self.RESERVED_SUBDOMAINS.split(",") if s.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
