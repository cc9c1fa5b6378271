from datetime import timedelta

from django.utils import timezone

from clinic_core.billing.models import Payment, PaymentStatus


def pending_payments_older_than(minutes: int):
    cutoff = timezone.now() - timedelta(minutes=minutes)
    return (
        Payment.objects.select_related("invoice")
        .filter(status=PaymentStatus.PENDING, order_id__isnull=False, created_at__lt=cutoff)
        .order_by("created_at")
    )
