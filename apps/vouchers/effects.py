import logging

from django.db import transaction

logger = logging.getLogger(__name__)


def run_non_critical(description: str, func, *args, **kwargs):
    """
    Runs a side effect whose failure must not fail the caller
    (audit scans, telemetry counters, cache invalidation).

    The effect gets its own savepoint so a database error inside it leaves the
    surrounding transaction usable. Returns the effect's result or None.
    """
    try:
        with transaction.atomic():
            return func(*args, **kwargs)
    except Exception:
        logger.warning(f"Non-critical effect failed: {description}", exc_info=True)
        return None
