import logging
import os
import sys

import structlog


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime configuration, read from the environment."""

    def __init__(self):
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
        self.DATABASE_NAME: str = os.getenv("DATABASE_NAME", "stylist_market")
        self.MONGO_TRANSACTIONS: bool = _flag("MONGO_TRANSACTIONS", "true")

        self.REDIS_URL: str = os.getenv("REDIS_URL", "")
        self.CACHE_TTL: int = int(os.getenv("CACHE_TTL", 600))

        self.PAYSTACK_SECRET_KEY: str = os.getenv("PAYSTACK_SECRET_KEY", "")
        self.PAYSTACK_BASE_URL: str = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
        self.PAYSTACK_TIMEOUT: float = float(os.getenv("PAYSTACK_TIMEOUT", 10))
        self.ORIGIN: str = os.getenv("ORIGIN", "http://localhost:3000")

        self.ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

        self.SHIPPING_PRICE: float = float(os.getenv("SHIPPING_PRICE", 15))
        self.TAX_RATE: float = float(os.getenv("TAX_RATE", 0.10))
        self.MIN_WALLET_FUNDING: float = float(os.getenv("MIN_WALLET_FUNDING", 100))

        self.SMTP_HOST: str = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT: int = int(os.getenv("SMTP_PORT", 587))
        self.SMTP_USER: str = os.getenv("SMTP_USER", "")
        self.SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
        self.MAIL_FROM: str = os.getenv("MAIL_FROM", "orders@localhost")

        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_JSON: bool = _flag("LOG_JSON", "false")
        self.PORT: int = int(os.getenv("PORT", 8000))


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
