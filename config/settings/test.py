# config/settings/test.py
from .base import *  # noqa

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

CLINIC_CONSULTATION_FEE = Decimal("2000.00")

MOBILE_PAYMENTS = {
    **MOBILE_PAYMENTS,
    "API_URL": "https://provider.test",
    "API_KEY": "test-api-key",
    "WEBHOOK_URL": "https://clinic.test/api/v1/webhooks/zenopay/",
    "POLL_INITIAL_DELAY": 5,
    "POLL_MAX_ATTEMPTS": 3,
    "POLL_MAX_DELAY": 60,
}

CELERY_TASK_ALWAYS_EAGER = False
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

LOGGING["loggers"]["clinic_core"]["level"] = "DEBUG"
