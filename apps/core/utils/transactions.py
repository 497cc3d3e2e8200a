import logging
import time

from django.conf import settings
from django.db import OperationalError


logger = logging.getLogger(__name__)


class RetryableConflict(Exception):
    """A write lost a race with a concurrent transaction and was rolled back."""


RETRYABLE_ERRORS = (OperationalError, RetryableConflict)


def run_with_retries(func, *args, attempts=None, **kwargs):
    """Call ``func`` and retry it as a whole on transient transaction conflicts.

    ``func`` must own its transaction boundary: a retry re-runs every read and
    write, never just the step that failed. Validation errors propagate on the
    first attempt.
    """
    attempts = attempts or settings.LEDGER_TRANSACTION_RETRIES
    backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                'Transaction conflict in %s (attempt %s of %s): %s',
                getattr(func, '__name__', func),
                attempt,
                attempts,
                exc,
            )
            time.sleep(backoff * attempt)
