"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./techpack_studio.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # OpenAI
    OPENAI_API_KEY: str = ""
    VISION_MODEL: str = "gpt-4o"
    IMAGE_MODEL: str = "gpt-image-1"
    IMAGE_SIZE: str = "1024x1024"

    # Credit cost table (credits per operation)
    CREDIT_COST_BASE_VIEWS: int = 0
    CREDIT_COST_ASSEMBLY_VIEW: int = 2
    CREDIT_COST_FLAT_SKETCHES: int = 2
    CREDIT_COST_COMPLETE_TECH_PACK: int = 10
    CREDIT_COST_CUSTOM_COMPONENT: int = 2

    # Background analysis
    BACKGROUND_ANALYSIS_MODE: str = "inline"  # inline | queue
    BACKGROUND_ANALYSIS_MAX_RETRIES: int = 2
    BACKGROUND_ANALYSIS_RETRY_DELAY_MS: int = 2000
    IMAGE_ANALYSIS_CACHE_TTL_HOURS: int = 168

    # Billing providers
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_API_BASE_URL: str = "https://api-m.sandbox.paypal.com"
    # "<membership>_<plan_type>" (spaces as underscores) -> PayPal billing plan id
    PAYPAL_PLAN_IDS: Dict[str, str] = {}
    POLAR_ACCESS_TOKEN: str = ""
    POLAR_API_BASE_URL: str = "https://sandbox-api.polar.sh"
    # product key (e.g. "pro_monthly") -> Polar product id
    POLAR_PRODUCT_IDS: Dict[str, str] = {}
    PAYMENT_HTTP_TIMEOUT_SECONDS: float = 20.0

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    AUTO_CREATE_DB_SCHEMA: bool = True

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()


def is_development() -> bool:
    """Stack traces are only exposed outside production."""
    return (settings.ENVIRONMENT or "").strip().lower() in {"development", "dev", "local"}


def require_openai_api_key() -> str:
    """Return configured OpenAI API key or raise a configuration error."""
    api_key = (settings.OPENAI_API_KEY or "").strip()
    if not api_key:
        raise ValueError("OPENAI_API_KEY is not configured")
    return api_key


def validate_security_settings() -> None:
    """Fail fast when insecure defaults are still configured in production."""
    if (settings.ENVIRONMENT or "").strip().lower() != "production":
        return

    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()
    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
    require_openai_api_key()
