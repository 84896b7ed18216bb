import os

from dotenv import load_dotenv
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ecommerce")

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3001")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

# SMTP
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_EMAIL = os.getenv("SMTP_EMAIL", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Shop")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "noreply@example.com")
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", 10))

# HTML -> PDF rendering service (Gotenberg compatible)
PDF_RENDER_URL = os.getenv("PDF_RENDER_URL", "http://localhost:3000/forms/chromium/convert/html")
PDF_RENDER_TIMEOUT = float(os.getenv("PDF_RENDER_TIMEOUT", 30))

# Pricing
TAX_RATE = float(os.getenv("TAX_RATE", 0.15))
SHIPPING_PRICE = float(os.getenv("SHIPPING_PRICE", 0))
PRICE_TOLERANCE = 0.01

RESET_TOKEN_EXPIRE_MINUTES = int(os.getenv("RESET_TOKEN_EXPIRE_MINUTES", 10))
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", 5))
MOBILE_SESSION_EXPIRE_MINUTES = int(os.getenv("MOBILE_SESSION_EXPIRE_MINUTES", 30))

NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", 5))
NOTIFICATION_CLAIM_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_CLAIM_TIMEOUT_SECONDS", 300))
