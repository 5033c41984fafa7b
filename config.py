import os
import logging

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Configuration settings read from the environment"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "storefront")

    # Stripe
    STRIPE_API_KEY = os.getenv("STRIPE_API_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    CURRENCY: str = os.getenv("CURRENCY", "usd")

    # Public URL of the storefront, used for redirects and download links
    APP_URL: str = os.getenv("APP_URL") or os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Email (Resend)
    RESEND_API_KEY = os.getenv("RESEND_API_KEY")
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "Orders <orders@resend.dev>")
    RESEND_AUDIENCE_ID = os.getenv("RESEND_AUDIENCE_ID")

    # Asset storage
    STORAGE_BASE_URL: str = os.getenv("STORAGE_BASE_URL", "http://localhost:9000/assets")
    STORAGE_SIGNING_KEY: str = os.getenv("STORAGE_SIGNING_KEY", "")
    STORAGE_URL_TTL_SECONDS: int = int(os.getenv("STORAGE_URL_TTL_SECONDS", "3600"))

    # Admin
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

    # Download tokens
    TOKEN_LENGTH: int = 32
    TOKEN_TTL_HOURS: int = 48
    MAX_DOWNLOADS: int = 5

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", 8000))


def setup_logging():
    """Configure logging settings"""
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
