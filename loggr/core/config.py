import os
import secrets
from dotenv import load_dotenv
import logging

# Load .env file
load_dotenv(override=True)


class Config:
    # Environment
    API_PRODUCTION = os.getenv("API_PRODUCTION", "false").lower() == "true"

    # Explicit LOG_LEVEL wins over the production default
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING" if API_PRODUCTION else "DEBUG").upper()

    # Authentication (nonces and admin tokens are JWTs signed with this key)
    SECRET_KEY_FROM_ENV = bool(os.getenv("SECRET_KEY"))
    # Unset outside production: random per process, so tokens and nonces die with it
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_urlsafe(32)
    TOKEN_ALGORITHM = "HS256"
    TOKEN_EXPIRE = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))
    NONCE_EXPIRE_HOURS = int(os.getenv("NONCE_EXPIRE_HOURS", 12))

    # Single admin account for the reporting API (bcrypt hash, never the plain password)
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH", "")

    # Database and Redis
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./loggr.db")
    REDIS_URL = os.getenv("REDIS_URL")
    TABLE_PREFIX = os.getenv("TABLE_PREFIX", "")
    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    # Ingestion
    MAX_PAYLOAD_BYTES = int(os.getenv("MAX_PAYLOAD_BYTES", 51200))
    RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", 10))

    # Retention job
    CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", 86400))
    ENABLE_CLEANUP_JOB = os.getenv("ENABLE_CLEANUP_JOB", "true").lower() == "true"

    # Evaluation order of ignore pattern types, first match wins
    IGNORE_PATTERN_PRIORITY = [
        p.strip() for p in os.getenv("IGNORE_PATTERN_PRIORITY", "").split(",")
        if p.strip()
    ]


config = Config()

# Configure logging globally
logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def check_runtime_config(cfg: Config = config) -> None:
    """Refuse to serve production traffic with an ephemeral signing key."""
    if cfg.SECRET_KEY_FROM_ENV:
        return
    if cfg.API_PRODUCTION:
        raise RuntimeError("SECRET_KEY must be set when API_PRODUCTION is true")
    logging.getLogger(__name__).warning(
        "SECRET_KEY not set, using a random key: admin tokens and nonces reset on restart")
