"""
Celery tasks for scheduled voucher maintenance
"""
import logging

from celery import shared_task
from django.utils import timezone

from .services import cleanup_expired_vouchers

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3)
def expire_vouchers_task(self):
    """
    Expires published/claimed vouchers whose validity window has passed.
    Scheduled hourly through CELERY_BEAT_SCHEDULE.
    """
    try:
        start_time = timezone.now()
        result = cleanup_expired_vouchers(now=start_time)
        duration = (timezone.now() - start_time).total_seconds()

        logger.info(
            f"Voucher expiry sweep: {result.success_count} expired, "
            f"{result.failed_count} failed in {duration:.2f}s"
        )
        return {
            'processed': result.processed_count,
            'expired': result.success_count,
            'failed': result.failed_count,
        }
    except Exception as e:
        logger.error(f"Voucher expiry sweep failed: {e}")
        raise self.retry(exc=e, countdown=120)


def run_sync_fallback(task_func, *args, **kwargs):
    """Queues the task, runs it inline when the broker is unreachable"""
    try:
        return task_func.delay(*args, **kwargs)
    except Exception as e:
        logger.warning(f"Celery unavailable ({e}), running {task_func.name} synchronously")
        return task_func(*args, **kwargs)
