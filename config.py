import os

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "youthguard")
TRANSACTIONS_ENABLED = os.getenv("TRANSACTIONS_ENABLED", "true").lower() == "true"

SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", str(7 * 24 * 60)))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Seeded on startup when both are set
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
RATE_LIMIT = os.getenv("RATE_LIMIT", "100/15minutes")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))

DEFAULT_PAGE_SIZE = 20
MAX_LOGIN_ATTEMPTS = 5
LOCK_MINUTES = 30


def is_production() -> bool:
    return ENVIRONMENT == "production"
