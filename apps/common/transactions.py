import logging
import time

from django.conf import settings
from django.db import OperationalError

from apps.common.exceptions import TransactionConflict

logger = logging.getLogger(__name__)

# SQLSTATE serialization_failure / deadlock_detected
CONFLICT_SQLSTATES = {"40001", "40P01"}
CONFLICT_MESSAGES = ("deadlock", "could not serialize", "database is locked", "lock wait timeout")


def is_conflict(exc):
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate in CONFLICT_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in CONFLICT_MESSAGES)


def run_with_conflict_retry(operation, *, label, attempts=None, backoff=None):
    """Run ``operation`` (which opens its own atomic block) retrying lock conflicts.

    Only conflicts reported by the database are retried. Every other error,
    including OperationalErrors that are not conflicts, propagates unchanged.
    """
    attempts = attempts or settings.LEDGER_CONFLICT_MAX_ATTEMPTS
    backoff = settings.LEDGER_CONFLICT_BACKOFF_SECONDS if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except OperationalError as exc:
            if not is_conflict(exc):
                raise
            if attempt >= attempts:
                logger.error(f"{label}: giving up after {attempt} conflicting attempts")
                raise TransactionConflict(operation=label, attempts=attempt) from exc
            logger.warning(f"{label}: conflict on attempt {attempt}/{attempts}, retrying", extra={"label": label})
            if backoff:
                time.sleep(backoff * attempt)
