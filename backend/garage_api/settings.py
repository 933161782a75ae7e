import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _load_env_file(path: Path) -> None:
    """
    Lightweight .env loader so local database and engine settings live in one
    place without another dependency.
    """
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.lower().startswith("export "):
            key = key[7:].strip()
        if not key:
            continue
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)


def _get_csv_env(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


def _get_int_env(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


_load_env_file(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
DJANGO_ENV = os.getenv("DJANGO_ENV", "development").strip().lower()
ALLOWED_HOSTS = _get_csv_env("DJANGO_ALLOWED_HOSTS", ["*"])

if DJANGO_ENV == "production":
    if DEBUG:
        raise RuntimeError("DJANGO_ENV is production but DJANGO_DEBUG is enabled.")
    if SECRET_KEY == "dev-only-insecure-key":
        raise RuntimeError("DJANGO_ENV is production but DJANGO_SECRET_KEY is still the dev default.")
    if not ALLOWED_HOSTS or "*" in ALLOWED_HOSTS:
        raise RuntimeError("DJANGO_ENV is production but DJANGO_ALLOWED_HOSTS is empty or contains '*'.")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "rest_framework",
    "api",
    "purchasing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "garage_api.urls"

WSGI_APPLICATION = "garage_api.wsgi.application"

# The purchasing app ships no migration files; create its tables with
# `manage.py migrate --run-syncdb`.
_db_engine = os.getenv("DB_ENGINE", "sqlite").strip().lower()
if _db_engine in {"postgres", "postgresql"}:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", ""),
            "USER": os.getenv("DB_USER", ""),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", ""),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", "") or BASE_DIR / "db.sqlite3",
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": ["api.authentication.GarageAuthentication"],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"],
    "UNAUTHENTICATED_USER": None,
}

# AuthN configuration (env-driven; no claim-name assumptions).
AUTH_ENABLED = os.getenv("AUTH_ENABLED", "0") == "1"
AUTH_ISSUER = os.getenv("AUTH_ISSUER", "")
AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "")
AUTH_JWKS_URL = os.getenv("AUTH_JWKS_URL", "")
AUTH_USER_ID_CLAIM = os.getenv("AUTH_USER_ID_CLAIM", "")
AUTH_USERNAME_CLAIM = os.getenv("AUTH_USERNAME_CLAIM", "")
AUTH_ROLES_CLAIM = os.getenv("AUTH_ROLES_CLAIM", "")
AUTH_COMPANY_CLAIM = os.getenv("AUTH_COMPANY_CLAIM", "")

if AUTH_ENABLED:
    missing = []
    if not AUTH_ISSUER:
        missing.append("AUTH_ISSUER")
    if not AUTH_AUDIENCE:
        missing.append("AUTH_AUDIENCE")
    if not AUTH_JWKS_URL:
        missing.append("AUTH_JWKS_URL")
    if not AUTH_USER_ID_CLAIM:
        missing.append("AUTH_USER_ID_CLAIM")
    if not AUTH_COMPANY_CLAIM:
        missing.append("AUTH_COMPANY_CLAIM")
    if missing:
        raise RuntimeError(
            "AUTH_ENABLED is true but required settings are missing: "
            + ", ".join(missing)
        )

DEV_AUTH_ENABLED = os.getenv("DEV_AUTH_ENABLED", "0") == "1"
DEV_AUTH_USER_ID = os.getenv("DEV_AUTH_USER_ID", "dev-user")
DEV_AUTH_ROLES = _get_csv_env("DEV_AUTH_ROLES", [])
DEV_AUTH_PERMISSIONS = _get_csv_env("DEV_AUTH_PERMISSIONS", [])
DEV_AUTH_COMPANY_ID = _get_int_env("DEV_AUTH_COMPANY_ID", 1)

# Purchase order engine settings.
PROCUREMENT_SEQUENCE_PAD = _get_int_env("PROCUREMENT_SEQUENCE_PAD", 3)
PROCUREMENT_SEQUENCE_RETRY_ATTEMPTS = _get_int_env("PROCUREMENT_SEQUENCE_RETRY_ATTEMPTS", 5)
PROCUREMENT_SEQUENCE_RETRY_BACKOFF_SECONDS = _get_float_env(
    "PROCUREMENT_SEQUENCE_RETRY_BACKOFF_SECONDS", 0.02
)
PROCUREMENT_CANCELLATION_REASONS = _get_csv_env(
    "PROCUREMENT_CANCELLATION_REASONS",
    ["Pricing Issue", "Supplier Delay", "Alternative Item Procured", "Others"],
)
PROCUREMENT_NOTIFY_SUPPLIER_ON_ISSUE = os.getenv("PROCUREMENT_NOTIFY_SUPPLIER_ON_ISSUE", "1") == "1"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("DJANGO_LOG_LEVEL", "WARNING")},
    "loggers": {
        "garage.audit": {
            "handlers": ["console"],
            "level": os.getenv("AUDIT_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
