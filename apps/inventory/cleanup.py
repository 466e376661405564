import atexit
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from threading import Lock

from django.conf import settings
from django.db import DatabaseError, close_old_connections, transaction
from django.utils import timezone

from apps.common.decimals import quantity_is_zero
from apps.common.exceptions import CleanupFailure
from apps.inventory.models import Stock, StockBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupScope:
    product_id: object
    maintains_id: object


def find_empty_batches(batches, rows_by_batch):
    return [batch for batch in batches if all(quantity_is_zero(row.quantity) for row in rows_by_batch.get(batch.id, []))]


def cleanup_empty_batches(product_id, maintains_id):
    """Soft-delete exhausted batches of one product at one location.

    A batch is exhausted when every row rounds to zero. Returns the retired
    batch ids.
    """
    try:
        with transaction.atomic():
            batches = list(
                StockBatch.objects.locked()
                .for_scope(product_id, maintains_id)
                .active()
                .order_by("id")
            )
            if not batches:
                return []

            rows_by_batch = {}
            for row in Stock.objects.select_for_update(of=("self",)).filter(batch__in=batches).order_by("batch_id", "unit_id"):
                rows_by_batch.setdefault(row.batch_id, []).append(row)

            empty = find_empty_batches(batches, rows_by_batch)
            if not empty:
                return []

            retired_ids = [batch.id for batch in empty]
            StockBatch.objects.filter(id__in=retired_ids).update(
                is_deleted=True,
                deleted_at=timezone.now(),
                updated_at=timezone.now(),
            )
    except DatabaseError as exc:
        raise CleanupFailure(f"cleanup of product {product_id} at {maintains_id} failed") from exc

    logger.info(f"Retired empty batches {retired_ids} for product {product_id} at {maintains_id}")
    return retired_ids


def run_cleanup(scope):
    """Run one cleanup job; failures are logged and never raised."""
    try:
        return cleanup_empty_batches(scope.product_id, scope.maintains_id)
    except Exception:
        logger.exception(f"Empty-batch cleanup failed for product {scope.product_id} at {scope.maintains_id}")
        return []


class CleanupQueue:
    """Background worker for post-commit cleanup jobs.

    Jobs are tracked until they finish, so callers (and shutdown) can wait
    for them instead of losing them.
    """

    def __init__(self, max_workers=1):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stock-cleanup")
        self._lock = Lock()
        self._pending = set()
        self._closed = False

    def submit(self, scope):
        with self._lock:
            if self._closed:
                logger.warning(f"Cleanup queue closed, not accepting {scope}")
                return None
            future = self._executor.submit(self._run, scope)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, scope):
        try:
            return run_cleanup(scope)
        finally:
            close_old_connections()

    def _forget(self, future):
        with self._lock:
            self._pending.discard(future)

    def pending(self):
        with self._lock:
            return len(self._pending)

    def drain(self, timeout=None):
        with self._lock:
            futures = list(self._pending)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_jobs=True):
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_jobs)


_queue_instance = None
_queue_lock = Lock()


def get_cleanup_queue():
    global _queue_instance
    with _queue_lock:
        if _queue_instance is None:
            _queue_instance = CleanupQueue(max_workers=settings.STOCK_CLEANUP_WORKERS)
            atexit.register(_queue_instance.shutdown)
        return _queue_instance


def dispatch_cleanup(scopes):
    for scope in scopes:
        if settings.STOCK_CLEANUP_ASYNC:
            if get_cleanup_queue().submit(scope) is None:
                run_cleanup(scope)
        else:
            run_cleanup(scope)


def schedule_cleanup(scopes):
    """Queue cleanup of ``(product_id, maintains_id)`` scopes for after the current commit."""
    scopes = sorted(
        {CleanupScope(product_id, maintains_id) for product_id, maintains_id in scopes},
        key=lambda scope: (str(scope.product_id), str(scope.maintains_id)),
    )
    if scopes:
        transaction.on_commit(lambda: dispatch_cleanup(scopes))
