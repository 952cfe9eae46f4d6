"""
Django settings for the AutoVFX credit ledger service.

Values are read from the environment (optionally via a ``.env`` file next to
``manage.py``). Credit pricing tables are JSON-encoded environment variables so
operators can add plans and top-up packs without a deploy.
"""
import json
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

env_path = BASE_DIR / ".env"
load_dotenv(env_path)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_json(name: str, default):
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{name} must contain valid JSON") from exc


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-dev-only-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", default=False)
ALLOWED_HOSTS = [host.strip() for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if host.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "django_filters",
    "credits",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "autovfx.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "autovfx.wsgi.application"

# Database
if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "postgres"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("POSTGRES_CONN_MAX_AGE", "60")),
        }
    }
else:
    # Local development and tests only; row locks are no-ops on SQLite.
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
        "rest_framework.filters.OrderingFilter",
    ],
}

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", default=False)
CELERY_TASK_EAGER_PROPAGATES = True

# Credit pricing
CREDITS_PER_SECOND = int(os.getenv("CREDITS_PER_SECOND", "15"))
# "round" bills the nearest whole second, "ceil" bills any started second.
CREDIT_ROUNDING = os.getenv("CREDIT_ROUNDING", "round")
DEFAULT_PLAN_CREDITS = int(os.getenv("DEFAULT_PLAN_CREDITS", "1000"))

PLAN_BASE_CREDITS = _env_json(
    "PLAN_BASE_CREDITS",
    {
        "tier1": 1000,
        "tier2": 2500,
        "tier3": 8000,
    },
)
# Storefront selling-plan ids alias the canonical tiers.
for _tier_key, _env_name in (("tier1", "SELLING_PLAN_TIER1"), ("tier2", "SELLING_PLAN_TIER2"), ("tier3", "SELLING_PLAN_TIER3")):
    _selling_plan_id = os.getenv(_env_name)
    if _selling_plan_id and _tier_key in PLAN_BASE_CREDITS:
        PLAN_BASE_CREDITS.setdefault(_selling_plan_id, PLAN_BASE_CREDITS[_tier_key])

PLAN_NAMES = _env_json(
    "PLAN_NAMES",
    {
        "tier1": "Creator",
        "tier2": "Studio",
        "tier3": "Pro",
    },
)

TOPUP_PACK_CREDITS = _env_json(
    "TOPUP_PACK_CREDITS",
    {
        "credits_1000": 1000,
        "credits_2000": 2000,
    },
)

TOPUP_CHECKOUT_URLS = _env_json("TOPUP_CHECKOUT_URLS", {})
TOPUP_DEFAULT_PACK = os.getenv("TOPUP_DEFAULT_PACK", "credits_1000")

RESERVATION_MAX_AGE_HOURS = int(os.getenv("RESERVATION_MAX_AGE_HOURS", "24"))
PROCESSED_EVENT_RETENTION_DAYS = int(os.getenv("PROCESSED_EVENT_RETENTION_DAYS", "30"))

# Shared secret the webhook adapter uses to sign normalised billing events.
BILLING_EVENT_SECRET = os.getenv("BILLING_EVENT_SECRET", "")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.getenv("LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.getenv("DJANGO_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "credits": {
            "level": os.getenv("CREDITS_LOG_LEVEL", "INFO"),
        },
    },
}
