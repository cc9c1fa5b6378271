# clinic_core/mobile_payments/tasks.py
import logging

from celery import shared_task
from django.conf import settings
from rest_framework.exceptions import NotFound

from clinic_core.billing.models import Payment
from clinic_core.common.exceptions import ProviderUnavailable
from clinic_core.mobile_payments.services import MobilePaymentService, PollOutcome

logger = logging.getLogger(__name__)


def poll_countdown(attempt: int) -> int:
    conf = settings.MOBILE_PAYMENTS
    return min(conf["POLL_INITIAL_DELAY"] * (2 ** attempt), conf["POLL_MAX_DELAY"])


@shared_task(bind=True, max_retries=None, acks_late=True, ignore_result=True)
def poll_mobile_payment(self, order_id: str):
    """
    Ask the provider for the order status until it resolves or the attempt
    budget runs out. Attempts are counted on the Payment row, so a worker
    restart does not reset the budget.
    """
    try:
        outcome = MobilePaymentService.poll_status(order_id=order_id)
    except NotFound:
        logger.error("Poll for unknown order %s dropped", order_id)
        return "missing"
    except ProviderUnavailable:
        logger.warning("Provider unavailable while polling %s; counting as pending", order_id)
        outcome = PollOutcome.PENDING

    if outcome != PollOutcome.PENDING:
        logger.info("Order %s resolved by poll: %s", order_id, outcome)
        return outcome

    attempts = Payment.objects.filter(order_id=order_id).values_list("poll_attempts", flat=True).first() or 0
    if attempts >= settings.MOBILE_PAYMENTS["POLL_MAX_ATTEMPTS"]:
        MobilePaymentService.expire(order_id=order_id)
        return "timeout"

    countdown = poll_countdown(attempts)
    logger.info("Order %s still pending after %s poll(s); next poll in %ss", order_id, attempts, countdown)
    raise self.retry(countdown=countdown)
