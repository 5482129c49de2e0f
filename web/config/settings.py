"""Django settings for the perfume shop backend.

Every deployment-specific value comes from the environment. Without
``DB_HOST`` the project runs on a local SQLite file, which is what the
test suite uses.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _bool("DJANGO_DEBUG", "false")
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.catalog",
    "apps.orders",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "shop"),
            "USER": os.getenv("DB_USER", "shop_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "shop-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "Africa/Maputo"
LANGUAGE_CODE = "en-us"

CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_THROTTLE_RATES": {
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "120/min"),
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "300/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "600/min"),
        "orders_status": os.getenv("THROTTLE_ORDERS_STATUS", "120/min"),
    },
}

# ---- Adapters ----
# False wires the in-process stubs (tests, local development)
USE_HTTP_ADAPTERS = _bool("USE_HTTP_ADAPTERS", "true")

HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- Payments ----
PAYMENT_TIMEOUT_SECS = float(os.getenv("PAYMENT_TIMEOUT_SECS", "30"))
PAYMENT_REFERENCE_PREFIX = os.getenv("PAYMENT_REFERENCE_PREFIX", "PERFUME")
PAYMENT_SUCCESS_CODE = os.getenv("PAYMENT_SUCCESS_CODE", "INS-0")
PAYMENT_PROVIDERS = {
    "MPESA": {
        "API_URL": os.getenv("MPESA_API_URL", ""),
        "AUTH_TOKEN": os.getenv("MPESA_AUTH_TOKEN", ""),
        "SERVICE_PROVIDER_CODE": os.getenv("MPESA_SERVICE_PROVIDER_CODE", ""),
        "ORIGIN": os.getenv("MPESA_ORIGIN", "*"),
        # The provider sandbox uses a self-signed certificate
        "VERIFY_TLS": _bool("MPESA_VERIFY_TLS", "true"),
        "PHONE_PREFIXES": ["84", "85"],
    },
    "EMOLA": {
        "API_URL": os.getenv("EMOLA_API_URL", ""),
        "AUTH_TOKEN": os.getenv("EMOLA_AUTH_TOKEN", ""),
        "SERVICE_PROVIDER_CODE": os.getenv("EMOLA_SERVICE_PROVIDER_CODE", ""),
        "ORIGIN": os.getenv("EMOLA_ORIGIN", "*"),
        "VERIFY_TLS": _bool("EMOLA_VERIFY_TLS", "true"),
        "PHONE_PREFIXES": ["86", "87"],
    },
}

# ---- Notifications ----
NOTIFY_BASE_URL = os.getenv("NOTIFY_BASE_URL", "")
NOTIFY_TIMEOUT_SECS = float(os.getenv("NOTIFY_TIMEOUT_SECS", "3"))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_id": {"()": "gateway.logging_filters.RequestIdFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_id"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django.db.backends": {"level": "WARNING"},
        "httpx": {"level": "WARNING"},
    },
}
