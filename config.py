"""
Application configuration settings
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "sqlite:///./discounts.db"

    # Server
    HOST: str = "localhost"
    PORT: int = 8080

    # Logging
    LOG_LEVEL: str = "INFO"

    # Verification sessions held in memory
    SESSION_TTL_SECONDS: int = 1800
    MAX_SESSIONS: int = 1000

    # Customer phone numbers (local mobile format)
    PHONE_PREFIX: str = "03"
    PHONE_LENGTH: int = 11

    # Demo verification channels
    DEMO_OTP_CODE: str = "1234"
    REGISTERED_REFERRERS: List[str] = ["03211234566"]

    # Used in benefit descriptions
    CURRENCY_LABEL: str = "Rs"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
