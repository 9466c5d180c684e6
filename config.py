"""Environment-aware configuration for the visit integrity service."""
import os
from datetime import timedelta


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        # A placeholder host (e.g., db_host) or a missing DATABASE_URL falls back to SQLite.
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'visits.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {
            "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
        }
        self.SESSION_COOKIE_HTTPONLY = True
        self.REMEMBER_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.WTF_CSRF_ENABLED = True
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@healthvisit.local")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "Admin@12345!")
        self.ADMIN_MAX_LOGIN_ATTEMPTS = int(os.getenv("ADMIN_MAX_LOGIN_ATTEMPTS", 5))
        self.ADMIN_LOCKOUT_MINUTES = int(os.getenv("ADMIN_LOCKOUT_MINUTES", 30))

        # Identity tags and visits
        self.TAG_VALIDITY_DAYS = int(os.getenv("TAG_VALIDITY_DAYS", 365))
        self.FRAUD_REVIEW_THRESHOLD = int(os.getenv("FRAUD_REVIEW_THRESHOLD", 70))
        self.VISIT_PAGE_SIZE = int(os.getenv("VISIT_PAGE_SIZE", 20))
        # How far ahead of server time a device clock may stamp a visit.
        self.MAX_CLOCK_SKEW_MINUTES = int(os.getenv("MAX_CLOCK_SKEW_MINUTES", 5))

        # Feedback gate
        self.FEEDBACK_WINDOW_DAYS = int(os.getenv("FEEDBACK_WINDOW_DAYS", 7))
        self.OTP_LENGTH = int(os.getenv("OTP_LENGTH", 6))
        self.OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", 600))
        self.OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", 5))
        self.OTP_STORE_BACKEND = os.getenv("OTP_STORE_BACKEND", "database").lower()

        self.ANOMALY_THRESHOLDS = {
            "frequency_window_minutes": int(os.getenv("FREQUENCY_WINDOW_MINUTES", 60)),
            "frequency_max_visits": int(os.getenv("FREQUENCY_MAX_VISITS", 5)),
            "travel_window_hours": int(os.getenv("TRAVEL_WINDOW_HOURS", 24)),
            "travel_max_minutes": float(os.getenv("TRAVEL_MAX_MINUTES", 60)),
            "travel_max_km": float(os.getenv("TRAVEL_MAX_KM", 50)),
            "low_rating_ceiling": int(os.getenv("LOW_RATING_CEILING", 2)),
            "low_rating_min_count": int(os.getenv("LOW_RATING_MIN_COUNT", 3)),
        }

        # External sinks; both are optional and best-effort.
        self.EXTERNAL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", 5))
        self.SMS_GATEWAY_URL = os.getenv("SMS_GATEWAY_URL", "")
        self.SMS_GATEWAY_TOKEN = os.getenv("SMS_GATEWAY_TOKEN", "")
        self.SMS_SENDER_ID = os.getenv("SMS_SENDER_ID", "")
        self.LEDGER_ANCHOR_URL = os.getenv("LEDGER_ANCHOR_URL", "")
        self.LEDGER_ANCHOR_TOKEN = os.getenv("LEDGER_ANCHOR_TOKEN", "")


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite://")
        # In-memory SQLite uses a static pool that rejects sizing options.
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.SMS_GATEWAY_URL = ""
        self.LEDGER_ANCHOR_URL = ""
