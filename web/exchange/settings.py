"""Django settings for the exchange project.

Values are read from the environment so the same settings module serves
local development, tests and deployment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "apps.orders",
]

MIDDLEWARE = []

if os.getenv("DB_ENGINE", "sqlite") == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", "exchange"),
            "USER": os.getenv("DB_USER", "exchange"),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", "db"),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- Gateways ----
USE_HTTP_ADAPTERS = _env_bool("USE_HTTP_ADAPTERS", False)
INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://inventory:9001")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://payments:9002")
TAX_BASE_URL = os.getenv("TAX_BASE_URL", "http://tax:9003")

HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30.0"))

# ---- Order policy ----
ORDER_STATE_EXPIRATION_HOURS = {
    "pending": float(os.getenv("PENDING_EXPIRATION_HOURS", "48")),
    "submitted": float(os.getenv("SUBMITTED_EXPIRATION_HOURS", "48")),
    "approved": float(os.getenv("APPROVED_EXPIRATION_HOURS", "168")),
}
OFFER_EXPIRATION_HOURS = float(os.getenv("OFFER_EXPIRATION_HOURS", "48"))
EXPIRATION_REMINDER_HOURS = float(os.getenv("EXPIRATION_REMINDER_HOURS", "5"))
DEFAULT_COMMISSION_RATE = os.getenv("DEFAULT_COMMISSION_RATE", "0.10")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")
TAX_RECORDING_RETRY_MINUTES = float(os.getenv("TAX_RECORDING_RETRY_MINUTES", "15"))
TAX_RECORDING_MAX_ATTEMPTS = int(os.getenv("TAX_RECORDING_MAX_ATTEMPTS", "5"))
CALLBACK_MAX_FAILURES = int(os.getenv("CALLBACK_MAX_FAILURES", "5"))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "correlation_id": {"()": "exchange.logging_filters.CorrelationIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(correlation_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["correlation_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "orders": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "apps.orders": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}
