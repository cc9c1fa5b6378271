# clinic_core/billing/apps.py
from __future__ import annotations

from django.apps import AppConfig


class BillingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "clinic_core.billing"
    label = "billing"

    def ready(self) -> None:
        # Registers in-process event subscribers (invoice on Billing entry).
        from clinic_core.billing import subscribers  # noqa: F401
