from django.apps import AppConfig


class MobilePaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "clinic_core.mobile_payments"
    label = "mobile_payments"
