import os
import logging
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv
from typing import Dict

# Load environment variables
load_dotenv()

# Base directory of the project
BASE_DIR = Path(__file__).resolve().parent.parent

class Config:
    """Configuration settings for the storefront service"""

    # Database settings
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DB_MIN_POOL_SIZE: int = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
    DB_MAX_POOL_SIZE: int = int(os.getenv("DB_MAX_POOL_SIZE", "10"))

    # Payment settings
    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    CURRENCY: str = os.getenv("CURRENCY", "eur")
    GATEWAY_CACHE_SIZE: int = int(os.getenv("GATEWAY_CACHE_SIZE", "128"))

    # Discord settings
    DISCORD_BOT_TOKEN: str = os.getenv("DISCORD_BOT_TOKEN", "")
    DISCORD_API_URL: str = os.getenv("DISCORD_API_URL", "https://discord.com/api/v10")

    # Email settings
    EMAIL_HOST: str = os.getenv("EMAIL_HOST", "")
    EMAIL_PORT: int = int(os.getenv("EMAIL_PORT", "587"))
    EMAIL_USER: str = os.getenv("EMAIL_USER", "")
    EMAIL_PASSWORD: str = os.getenv("EMAIL_PASSWORD", "")
    EMAIL_FROM: str = os.getenv("EMAIL_FROM", "noreply@discord-shop.com")

    # API settings
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "3000"))
    BOT_API_KEY: str = os.getenv("BOT_API_KEY", "")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # Seconds allowed for any single call to Stripe, Discord or SMTP
    EXTERNAL_CALL_TIMEOUT: float = float(os.getenv("EXTERNAL_CALL_TIMEOUT", "10"))

    # Commission rate (percent) per subscription tier
    COMMISSION_RATES: Dict[str, Decimal] = {
        "FREE": Decimal("5.0"),
        "STARTER": Decimal("3.5"),
        "PRO": Decimal("2.0"),
        "BUSINESS": Decimal("1.0"),
        "ENTERPRISE": Decimal("0.5"),
    }

    # Other settings
    TIMEZONE: str = os.getenv("TZ", "Europe/Paris")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Paths
    LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "logs")))

    @classmethod
    def validate(cls):
        """Fail fast on settings the service cannot start without"""
        for name in ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "DISCORD_BOT_TOKEN"):
            if not getattr(cls, name):
                raise ValueError(f"No {name} set in environment")

def setup_logging():
    """Configure logging settings"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    Config.LOG_DIR.mkdir(exist_ok=True)
    log_file = Config.LOG_DIR / "storefront.log"

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL),
        format=log_format,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
