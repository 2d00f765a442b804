from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # App settings
    APP_NAME: str = "Loan Portal Auth API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    # "production" hides dev OTP echoes and raw error details
    ENVIRONMENT: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV"))

    # Security settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "https://before-salary-frontend.onrender.com",
    ]

    # API settings
    API_AUTH_PREFIX: str = "/api/auth"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TTL_DAYS: int = 7
    LOG_TO_FILE: bool = True

    # SMTP / Email settings. Host, port, user and password are validated by the
    # mail transport, not here, so a broken relay never prevents startup.
    SMTP_HOST: Optional[str] = Field(default=None, validation_alias=AliasChoices("SMTP_HOST", "EMAIL_HOST"))
    SMTP_PORT: Optional[str] = Field(default=None, validation_alias=AliasChoices("SMTP_PORT", "EMAIL_PORT"))
    SMTP_USERNAME: Optional[str] = Field(default=None, validation_alias=AliasChoices("SMTP_USERNAME", "EMAIL_USER"))
    SMTP_PASSWORD: Optional[str] = Field(default=None, validation_alias=AliasChoices("SMTP_PASSWORD", "EMAIL_PASS"))
    SMTP_FROM_EMAIL: Optional[str] = Field(default=None, validation_alias=AliasChoices("SMTP_FROM_EMAIL", "EMAIL_FROM"))
    SMTP_FROM_NAME: Optional[str] = None
    SMTP_TIMEOUT: int = 20
    SMTP_DEBUG: bool = False
    SMTP_VERIFY_ON_STARTUP: bool = True

    # MongoDB
    MONGO_URI: Optional[str] = Field(default=None, validation_alias=AliasChoices("MONGO_URI", "MONGODB_URI"))
    MONGO_DB: str = "loan_portal"

    # OTP
    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 600

    @property
    def is_production(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"
        populate_by_name = True

# Create settings instance
settings = Settings()

# Validate required settings
if not settings.SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable is required")


def get_settings() -> Settings:
    """Return the live settings instance (replaced by reload_settings)."""
    return settings


def reload_settings() -> Settings:
    """Re-read the environment, e.g. after SMTP credentials were rotated."""
    global settings
    settings = Settings()
    return settings
