from pathlib import Path
from decimal import Decimal
from decouple import config, Csv
import sys, os

BASE_DIR = Path(__file__).resolve().parent.parent

# Environment detection
def detect_environment():
    """Auto-detect the current environment"""
    env = config('ENVIRONMENT', default=None)
    if env:
        return env.lower()
    hostname = os.environ.get('HOSTNAME', '').lower()
    if any(x in hostname for x in ['prod', 'production']):
        return 'production'
    elif any(x in hostname for x in ['staging', 'stage']):
        return 'staging'
    return 'development'

def is_production():
    """Check if running in production"""
    return detect_environment() == 'production'

current_env = detect_environment()
RUNNING_TESTS = "pytest" in sys.modules or "test" in sys.argv


SECRET_KEY = config('SECRET_KEY', default='dokterku-insecure-development-key')
DEBUG = config('DEBUG', default=not is_production(), cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1,testserver', cast=Csv())

DEPLOYMENT_REGION = config('DEPLOYMENT_REGION', default='default')

DATABASES = {
    'default': {
        'ENGINE': config('DB_ENGINE', default='django.db.backends.sqlite3'),
        'NAME': config('DB_NAME', default=str(BASE_DIR / 'db.sqlite3')),
        'USER': config('DB_USER', default=''),
        'PASSWORD': config('DB_PASSWORD', default=''),
        'HOST': config('DB_HOST', default=''),
        'PORT': config('DB_PORT', default=''),
    }
}

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_spectacular",
    "core",
    "clinical",
    "jaspel",
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

ROOT_URLCONF = "backend.urls"

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
            ],
        },
    },
]

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"
    },
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

AUTH_USER_MODEL = "core.Participant"

LANGUAGE_CODE = "id"
TIME_ZONE = config("TIME_ZONE", default="Asia/Jakarta")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": (
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ),
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 20,
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
        "rest_framework.renderers.BrowsableAPIRenderer",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

SPECTACULAR_SETTINGS = {
    "TITLE": "Dokterku JASPEL Settlement API",
    "DESCRIPTION": "Procedure validation and performer fee (JASPEL) settlement engine",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
    "COMPONENT_SPLIT_REQUEST": True,
    "SCHEMA_PATH_PREFIX": "/api/v1/",
}

CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="memory://localhost/")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default="cache+memory://")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_ENABLE_UTC = True
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 30 * 60
CELERY_RESULT_EXPIRES = 3600
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_ALWAYS_EAGER = config("CELERY_TASK_ALWAYS_EAGER", default=False, cast=bool)

CACHES = {
    "default": {
        "BACKEND": config("CACHE_BACKEND", default="django.core.cache.backends.locmem.LocMemCache"),
        "LOCATION": config("CACHE_LOCATION", default="DOKTERKU-cache"),
        "OPTIONS": {
            "MAX_ENTRIES": 5000,
        }
    }
}

# Override for testing
if RUNNING_TESTS:
    CACHES["default"]["BACKEND"] = "django.core.cache.backends.locmem.LocMemCache"
    CACHES["default"]["LOCATION"] = "unique-test-cache"
    CELERY_TASK_ALWAYS_EAGER = True
    CELERY_TASK_EAGER_PROPAGATES = True
    PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]


# JASPEL fee-settlement engine
JASPEL_PRODUCTION_MODE = config("JASPEL_PRODUCTION_MODE", default=is_production(), cast=bool)
JASPEL_MAX_NOMINAL = Decimal(config("JASPEL_MAX_NOMINAL", default="10000000"))
JASPEL_RETENTION_DAYS = config("JASPEL_RETENTION_DAYS", default=30, cast=int)
JASPEL_FORMULA_CLOCK = config("JASPEL_FORMULA_CLOCK", default="execution")
JASPEL_SETTLEMENT_MAX_ATTEMPTS = config("JASPEL_SETTLEMENT_MAX_ATTEMPTS", default=3, cast=int)
JASPEL_SETTLEMENT_DEADLINE = config("JASPEL_SETTLEMENT_DEADLINE", default=300, cast=int)


from core.logging_config import get_logging_config

USE_FILE_LOGGING = config("USE_FILE_LOGGING", default=not RUNNING_TESTS, cast=bool)

LOGGING = get_logging_config(BASE_DIR, DEPLOYMENT_REGION, use_files=USE_FILE_LOGGING)

SENTRY_DSN = config("SENTRY_DSN", default="")

if SENTRY_DSN and not RUNNING_TESTS:
    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.celery import CeleryIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            CeleryIntegration(),
        ],
        environment=current_env,
        traces_sample_rate=config("SENTRY_TRACES_SAMPLE_RATE", default=0.0, cast=float),
        send_default_pii=False,
    )
