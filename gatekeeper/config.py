"""
Gatekeeper - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
An empty SECRET_KEY generates a throwaway per-process key so a developer
can start the service without any setup; tokens do not survive a restart.
"""

import logging
import secrets
from typing import List

from pydantic import validator
from pydantic_settings import BaseSettings


logger = logging.getLogger("gatekeeper.config")

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    
    Attributes:
        SECRET_KEY: JWT signing key (>= 32 chars, or empty for dev)
        PREVIOUS_SECRET_KEYS: Retired signing keys still accepted on verify
        LOCKOUT_FAIL_CLOSED: Treat a failed lockout write as a lock
        RATE_LIMIT_STORAGE_URL: memory:// or redis://host:port/db
    """
    
    # Security
    SECRET_KEY: str = ""
    PREVIOUS_SECRET_KEYS: List[str] = []
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "gatekeeper"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_WORK_FACTOR: int = 12
    
    # Account lockout
    LOCKOUT_THRESHOLD: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15
    LOCKOUT_FAIL_CLOSED: bool = True
    
    # Rate limiting
    RATE_LIMIT_PER_IP: int = 100
    RATE_LIMIT_PER_USER: int = 200
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_STORAGE_URL: str = "memory://"
    
    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./gatekeeper.db"
    
    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]
    
    LOG_LEVEL: str = "INFO"
    
    @validator("SECRET_KEY", always=True)
    def secret_key_strength(cls, v):
        """Generate a dev key when unset; refuse short keys."""
        if not v:
            logger.warning("SECRET_KEY is not set; generated a random key for this process")
            return secrets.token_urlsafe(48)
        if len(v) < MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters")
        return v
    
    @validator("LOCKOUT_THRESHOLD", "RATE_LIMIT_PER_IP", "RATE_LIMIT_PER_USER", "RATE_LIMIT_WINDOW_SECONDS")
    def positive(cls, v):
        if v < 1:
            raise ValueError("must be a positive integer")
        return v
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()


def configure_logging(level: str = None) -> None:
    """Install a single timestamped stream handler on the root logger."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
