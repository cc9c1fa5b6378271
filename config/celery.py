# config/celery.py
import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("clinic_flow")

# Read every CELERY_* key from Django settings
app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up <app>/tasks.py modules (mobile payment polling)
app.autodiscover_tasks()
