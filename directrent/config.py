import os
import logging
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class Config:
    # Database Configuration
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASS = os.getenv("DB_PASS", "postgres")
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "directrent")

    @property
    def DATABASE_URL(self):
        # Prefer DATABASE_URL env var if set (for SQLite support)
        url = os.getenv("DATABASE_URL")
        if url:
            return url

        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # HTTP API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = _int_env("API_PORT", 8080)

    # Rate limiting: RATE_LIMIT requests per RATE_PER seconds per client
    RATE_LIMIT = _int_env("RATE_LIMIT", 60)
    RATE_PER = _int_env("RATE_PER", 60)

    # Withdrawal bounds in pesewas (GH₵10 .. GH₵5000 per request)
    PAYOUT_MIN_AMOUNT = _int_env("PAYOUT_MIN_AMOUNT", 1_000)
    PAYOUT_MAX_AMOUNT = _int_env("PAYOUT_MAX_AMOUNT", 500_000)
    if PAYOUT_MIN_AMOUNT <= 0 or PAYOUT_MAX_AMOUNT < PAYOUT_MIN_AMOUNT:
        raise ValueError(
            "PAYOUT_MIN_AMOUNT must be positive and not above PAYOUT_MAX_AMOUNT"
        )

    # Subscription expiry sweep, seconds between runs
    EXPIRY_SWEEP_INTERVAL = _int_env("EXPIRY_SWEEP_INTERVAL", 300)

config = Config()

# Log configuration on startup
logging.info(f"Database: {config.DATABASE_URL.split('@')[1] if '@' in config.DATABASE_URL else 'SQLite'}")
logging.info(f"Payout bounds: {config.PAYOUT_MIN_AMOUNT}..{config.PAYOUT_MAX_AMOUNT} pesewas")
