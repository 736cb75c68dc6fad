import os

from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development")
IS_PRODUCTION = APP_ENV == "production"
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# JWT Config
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET") or JWT_SECRET
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
REFRESH_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_REFRESH_EXPIRE_MINUTES", 60 * 24 * 30))  # 30 days

# Email
EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", 587))
EMAIL_SECURE = os.getenv("EMAIL_SECURE", "false").lower() == "true"
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASS = os.getenv("EMAIL_PASS")
EMAIL_FROM = os.getenv("EMAIL_FROM") or EMAIL_USER or "no-reply@marketly.local"

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")


def _cors_origins():
    raw = os.getenv("CORS_ORIGINS")
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    origins = ["http://localhost:3000", "http://localhost:3001", FRONTEND_URL]
    return list(dict.fromkeys(origins))


CORS_ORIGINS = _cors_origins()

# Checkout pricing
TAX_RATE = float(os.getenv("TAX_RATE", 0))
SHIPPING_COST = float(os.getenv("SHIPPING_COST", 0))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 0))

# Rate limiting (15 minute windows)
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", 100 if IS_PRODUCTION else 1000))
AUTH_RATE_LIMIT_MAX = int(os.getenv("AUTH_RATE_LIMIT_MAX", 20 if IS_PRODUCTION else 50))

# Cart
MAX_ITEM_QUANTITY = 99
