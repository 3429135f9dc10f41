import os

from dotenv import dotenv_values

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")

    # Database (env in prod; dev/test may use default)
    _ENV_FALLBACK = dotenv_values(".env")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    APP_ENV = os.environ.get("APP_ENV", "development")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None
    CLAIM_RATE_LIMIT = os.getenv("CLAIM_RATE_LIMIT", "30/minute")

    # Internal callers (marketplace handlers) authenticate with a shared bearer token.
    # Unset → open (dev/tests only; required in staging/production).
    INTERNAL_API_TOKEN = os.getenv("INTERNAL_API_TOKEN")

    # --- Mail (dunning notices) ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = (os.getenv("MAIL_USE_TLS", "true").lower() == "true")
    MAIL_USE_SSL = (os.getenv("MAIL_USE_SSL", "false").lower() == "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Marketplace Billing <billing@local.test>")
    MAIL_SUPPRESS_SEND = (os.getenv("MAIL_SUPPRESS_SEND", "false").lower() == "true")

    # Used for absolute links in emails and Checkout redirects (must be https in prod)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Marketplace Pro")
    SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "support@local.test")

    # --- Stripe (Billing) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Price IDs per tier (per environment via env vars)
    STRIPE_PRICE_BASIC = os.getenv("STRIPE_PRICE_BASIC")
    STRIPE_PRICE_PRO = os.getenv("STRIPE_PRICE_PRO")
    STRIPE_PRICE_ENTERPRISE = os.getenv("STRIPE_PRICE_ENTERPRISE")

    # Lead fees are charged off-session in this currency (amounts live in billing.tiers)
    LEAD_FEE_CURRENCY = os.getenv("LEAD_FEE_CURRENCY", "usd")

    # --- Reconciliation policy ---
    LEAD_CREDIT_CYCLE_DAYS = int(os.getenv("LEAD_CREDIT_CYCLE_DAYS", "30"))
    GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
    MAX_PAYMENT_FAILURES = int(os.getenv("MAX_PAYMENT_FAILURES", "3"))
    # A ledger entry stuck in "processing" longer than this is handed to the next delivery
    WEBHOOK_PROCESSING_LEASE_SECONDS = int(os.getenv("WEBHOOK_PROCESSING_LEASE_SECONDS", "300"))

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    MAIL_SUPPRESS_SEND = True

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    MAIL_SUPPRESS_SEND = False

    # REQUIRE env vars in production (fail fast if missing); read lazily so
    # importing this module never crashes a dev shell
    @property
    def SQLALCHEMY_DATABASE_URI(self):
        return os.environ["DATABASE_URL"]

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    MAIL_SUPPRESS_SEND = True
    INTERNAL_API_TOKEN = None
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    STRIPE_PRICE_BASIC = "price_basic_monthly"
    STRIPE_PRICE_PRO = "price_pro_monthly"
    STRIPE_PRICE_ENTERPRISE = "price_enterprise_monthly"

_ENV_MAP = {
    "development": DevelopmentConfig,
    "staging": ProductionConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    cls = _ENV_MAP.get(env, DevelopmentConfig)
    # Instance so property-based settings (ProductionConfig) resolve at load time
    return cls()
