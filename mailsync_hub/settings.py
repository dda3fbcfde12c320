import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        os.environ.setdefault(key, value)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


_load_dotenv(BASE_DIR / ".env")

DEBUG = _env_bool("DEBUG", "False")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY") or os.environ.get("SECRET_KEY", "change-me")

ALLOWED_HOSTS = [
    host.strip()
    for host in os.environ.get("ALLOWED_HOSTS", "*").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "jobs",
    "mail",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",  # Must be after SecurityMiddleware
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "mailsync_hub.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ]
        },
    }
]

WSGI_APPLICATION = "mailsync_hub.wsgi.application"

# Database configuration using individual DB_* environment variables;
# falls back to a local SQLite file (development and tests).
if all(
    os.environ.get(key)
    for key in ["DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"]
):
    db_config = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME"),
        "USER": os.environ.get("DB_USER"),
        "PASSWORD": os.environ.get("DB_PASSWORD"),
        "HOST": os.environ.get("DB_HOST"),
        "PORT": os.environ.get("DB_PORT", "5432"),
    }
    # Add SSL mode if specified (for psycopg2 compatibility)
    sslmode = os.environ.get("DB_SSLMODE")
    if sslmode:
        db_config["OPTIONS"] = {"sslmode": sslmode.lower()}
    DATABASES = {"default": db_config}
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
    }
}
if os.environ.get("CACHE_REDIS_URL"):
    CACHES["default"] = {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": os.environ["CACHE_REDIS_URL"],
    }

LANGUAGE_CODE = "en-au"

TIME_ZONE = "Australia/Brisbane"  # Always GMT+10 (no daylight saving time)

USE_I18N = True

USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

MEDIA_URL = os.environ.get("MEDIA_URL", "/media/")
MEDIA_ROOT = BASE_DIR / "media"

# WhiteNoise configuration for serving static files in production
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage",
    },
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"]
}

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get(
    "CELERY_RESULT_BACKEND", "redis://localhost:6379/0"
)

# Shared mailbox access: service account with domain-wide delegation
GOOGLE_SERVICE_ACCOUNT_JSON = os.environ.get("GOOGLE_SERVICE_ACCOUNT_JSON", "")
GOOGLE_IMPERSONATE_USER_EMAIL = os.environ.get("GOOGLE_IMPERSONATE_USER_EMAIL", "")
MAIL_GMAIL_MAX_RETRIES = int(os.environ.get("MAIL_GMAIL_MAX_RETRIES", "3"))

# Mailbox sync: scope, lock, cooldown
MAIL_SYNC_DEFAULT_SCOPE = os.environ.get("MAIL_SYNC_DEFAULT_SCOPE", "gmail_sync")
MAIL_SYNC_LOCK_TTL_SECONDS = int(os.environ.get("MAIL_SYNC_LOCK_TTL_SECONDS", "300"))
MAIL_SYNC_TIME_BUDGET_SECONDS = int(os.environ.get("MAIL_SYNC_TIME_BUDGET_SECONDS", "240"))
MAIL_SYNC_COOLDOWN_SECONDS = int(os.environ.get("MAIL_SYNC_COOLDOWN_SECONDS", "900"))
MAIL_SYNC_MAX_CONSECUTIVE_FAILURES = int(
    os.environ.get("MAIL_SYNC_MAX_CONSECUTIVE_FAILURES", "3")
)

# Mailbox sync: delta and backfill bounds
MAIL_SYNC_WATCHED_LABELS = [
    label.strip()
    for label in os.environ.get("MAIL_SYNC_WATCHED_LABELS", "INBOX,SENT").split(",")
    if label.strip()
]
MAIL_SYNC_DELTA_MAX_PAGES = int(os.environ.get("MAIL_SYNC_DELTA_MAX_PAGES", "10"))
MAIL_SYNC_BACKFILL_PAGE_BUDGET = int(os.environ.get("MAIL_SYNC_BACKFILL_PAGE_BUDGET", "5"))
MAIL_SYNC_BACKFILL_PAGE_SIZE = int(os.environ.get("MAIL_SYNC_BACKFILL_PAGE_SIZE", "50"))
MAIL_SYNC_BACKFILL_MAX_THREADS = int(os.environ.get("MAIL_SYNC_BACKFILL_MAX_THREADS", "100"))

# Background repair passes
MAIL_REHYDRATE_BATCH_SIZE = int(os.environ.get("MAIL_REHYDRATE_BATCH_SIZE", "50"))
MAIL_REHYDRATE_DELAY_SECONDS = float(os.environ.get("MAIL_REHYDRATE_DELAY_SECONDS", "0.3"))
MAIL_CID_BATCH_SIZE = int(os.environ.get("MAIL_CID_BATCH_SIZE", "20"))
MAIL_CID_DELAY_SECONDS = float(os.environ.get("MAIL_CID_DELAY_SECONDS", "0.5"))
MAIL_CID_RETRY_BACKOFF_SECONDS = int(os.environ.get("MAIL_CID_RETRY_BACKOFF_SECONDS", "600"))
MAIL_CID_MAX_ATTEMPTS = int(os.environ.get("MAIL_CID_MAX_ATTEMPTS", "3"))

# Email sync audit: log each sync decision (history pages, thread fetches, upserts).
# Set to false in production to keep logs quiet.
EMAIL_SYNC_AUDIT_LOGGING = _env_bool("EMAIL_SYNC_AUDIT_LOGGING", "true")

# Logging Configuration
# The platform captures stdout/stderr, so we log to console
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {asctime} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stdout",
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stderr",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "django.request": {
            "handlers": ["error_console"],
            "level": "ERROR",
            "propagate": False,
        },
        "django.db.backends": {
            "handlers": ["console"],
            "level": os.environ.get("DB_LOG_LEVEL", "WARNING"),  # Set to DEBUG to see SQL queries
            "propagate": False,
        },
        # Application loggers
        "mail": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "mail.sync_audit": {
            "handlers": ["console"],
            "level": "INFO" if EMAIL_SYNC_AUDIT_LOGGING else "WARNING",
            "propagate": False,
        },
        "jobs": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        # Third-party loggers
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "googleapiclient": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
