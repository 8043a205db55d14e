import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "royal_jewels")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGO = "HS256"
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", 7))

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Payment gateway
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
PAYMENT_TIMEOUT = float(os.getenv("PAYMENT_TIMEOUT", 10))
PAYMENT_MAX_RETRIES = int(os.getenv("PAYMENT_MAX_RETRIES", 3))
WEBHOOK_TOLERANCE = int(os.getenv("WEBHOOK_TOLERANCE", 300))
CURRENCY = os.getenv("CURRENCY", "inr")

# Outbound mail
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", 465))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_FROM = os.getenv("SMTP_FROM", "no-reply@royaljewels.example")

# Per-gram prices used until an admin stores rates in the database
DEFAULT_RATES = {
    "Gold": float(os.getenv("GOLD_RATE", 5300)),
    "Silver": float(os.getenv("SILVER_RATE", 100)),
}

GIFT_CARD_MIN = 5000
GIFT_CARD_MAX = 99999
GIFT_CARD_VALIDITY_DAYS = 365
GIFT_CARD_CODE_LENGTH = 16

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
