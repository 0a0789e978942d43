import os

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")

DEBUG = os.environ.get("DJANGO_DEBUG", "False") == "True"

ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")

INSTALLED_APPS = [
    "projects",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "my_profile.urls"

# No models; the audit keeps its state in the cache.
DATABASES = {}

# Background task state and the default opportunity store live here.
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "redirect-audit",
    }
}

USE_TZ = True

# Redirect Chains Audit tunables (see projects.utils.get_setting).
REDIRECT_AUDIT_MAX_WORKERS = int(os.environ.get("REDIRECT_AUDIT_MAX_WORKERS", 10))
REDIRECT_AUDIT_REQUEST_TIMEOUT = int(os.environ.get("REDIRECT_AUDIT_REQUEST_TIMEOUT", 15))
REDIRECT_AUDIT_USER_AGENT = "Mozilla/5.0 (compatible; RedirectChainAudit/1.0)"
REDIRECT_AUDIT_TASK_TTL = 60 * 60
REDIRECT_AUDIT_ENRICHMENT_QUEUE = os.environ.get(
    "REDIRECT_AUDIT_ENRICHMENT_QUEUE", "redirect-chains-enrichment"
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "projects": {
            "handlers": ["console"],
            "level": os.environ.get("REDIRECT_AUDIT_LOG_LEVEL", "INFO"),
        },
    },
}
