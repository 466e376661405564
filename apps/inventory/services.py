import logging

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.audit.services import record_audit
from apps.catalog.services import conversion_map, from_main_quantity, main_unit_of
from apps.common.decimals import ONE, round_money, round_quantity, to_decimal
from apps.common.exceptions import InsufficientStock, LedgerValidationError, UnresolvedReference
from apps.inventory.models import Stock, StockBatch
from apps.inventory.rebalance import RowState, rebalance

logger = logging.getLogger(__name__)


def _normalize_prices(unit_prices):
    if not unit_prices:
        return {}
    if isinstance(unit_prices, dict):
        items = unit_prices.items()
    else:
        items = ((entry["unit_id"], entry["price"]) for entry in unit_prices)

    prices = {}
    for unit_id, price in items:
        price = round_money(price)
        if price < 0:
            raise LedgerValidationError("Prices cannot be negative.", unit_id=unit_id)
        prices[str(unit_id)] = price
    return prices


def _next_batch_number(product):
    count = StockBatch.objects.filter(product_id=product.id).count() + 1
    return f"B-{timezone.localdate():%Y%m%d}-{count:04d}"


def create_batch(
    *,
    product,
    maintains,
    main_quantity,
    unit_prices,
    batch_number="",
    production_date=None,
    actor=None,
):
    """Create a lot holding ``main_quantity`` main units with one row per tracked unit.

    Each row quantity is the main quantity expressed in that unit; each price
    comes straight from ``unit_prices`` and is required for every tracked unit.
    """
    main_unit = main_unit_of(product)
    main_quantity = round_quantity(main_quantity)
    if main_quantity < 0:
        raise LedgerValidationError("Quantity cannot be negative.", main_quantity=main_quantity)

    factors = conversion_map(product)
    prices = _normalize_prices(unit_prices)
    missing = [str(unit_id) for unit_id in factors if str(unit_id) not in prices]
    if missing:
        raise LedgerValidationError("A price is required for every unit of the product.", missing_units=",".join(missing))

    with transaction.atomic():
        batch = StockBatch.objects.create(
            product=product,
            maintains=maintains,
            batch_number=batch_number or _next_batch_number(product),
            production_date=production_date,
            created_by=actor,
        )
        Stock.objects.bulk_create(
            [
                Stock(
                    batch=batch,
                    unit_id=unit_id,
                    quantity=round_quantity(from_main_quantity(main_quantity, factor)),
                    price_per_quantity=prices[str(unit_id)],
                )
                for unit_id, factor in sorted(factors.items(), key=lambda item: str(item[0]))
            ]
        )
        record_audit(
            actor=actor,
            action="inventory.batch.create",
            entity_type="stock_batch",
            entity_id=batch.id,
            maintains=maintains,
            payload={
                "product_id": product.id,
                "main_unit_id": main_unit.id,
                "main_quantity": main_quantity,
                "prices": prices,
            },
        )

    logger.info(f"Created batch {batch.id} for product {product.id} at {maintains.id}: {main_quantity} main units")
    return batch


def get_row(batch, unit):
    row = Stock.objects.filter(batch_id=batch.id, unit_id=unit.id).first()
    if row is None:
        raise UnresolvedReference("Stock row not found.", batch_id=batch.id, unit_id=unit.id)
    return row


def list_rows_for_batch(batch):
    return list(Stock.objects.filter(batch_id=batch.id).select_related("unit").order_by("unit_id"))


def list_batches_for_product(product, maintains=None, include_deleted=False):
    queryset = StockBatch.objects.for_scope(product.id, maintains.id if maintains else None)
    if not include_deleted:
        queryset = queryset.active()
    return list(queryset.oldest_first())


def lock_stock_rows(*, batch_ids=None, scopes=None):
    """Lock stock rows ordered by batch then unit so concurrent writers never cross.

    ``scopes`` is an iterable of ``(product_id, maintains_id)`` pairs whose
    active batches are locked as a whole.
    """
    condition = Q()
    if batch_ids:
        condition |= Q(batch_id__in=list(batch_ids))
    for product_id, maintains_id in scopes or ():
        condition |= Q(batch__product_id=product_id, batch__maintains_id=maintains_id, batch__is_deleted=False)
    if not condition:
        return []
    return list(Stock.objects.select_for_update(of=("self",)).filter(condition).order_by("batch_id", "unit_id"))


def _row_states(rows, product):
    factors = conversion_map(product)
    states = []
    for row in rows:
        factor = factors.get(row.unit_id)
        if factor is None:
            logger.warning(f"Batch {row.batch_id} tracks unit {row.unit_id} without a conversion, using factor 1")
            factor = ONE
        states.append(RowState(unit_id=row.unit_id, quantity=row.quantity, factor=factor))
    return states


def apply_unit_delta(*, batch, unit_id, delta):
    """Add ``delta`` (negative to remove) in ``unit_id`` to ``batch`` and rebalance its other rows.

    Must run inside the caller's transaction.
    """
    product = batch.product
    main_unit = main_unit_of(product)
    rows = list(Stock.objects.select_for_update(of=("self",)).filter(batch_id=batch.id).order_by("unit_id"))
    try:
        new_states = rebalance(_row_states(rows, product), unit_id, delta, main_unit_id=main_unit.id)
    except InsufficientStock as exc:
        raise InsufficientStock(exc.message, **{**exc.fields, "batch_id": batch.id}) from exc

    now = timezone.now()
    changed = []
    for row, state in zip(rows, new_states):
        if row.quantity != state.quantity:
            row.quantity = state.quantity
            row.updated_at = now
            changed.append(row)
    if changed:
        Stock.objects.bulk_update(changed, ["quantity", "updated_at"])
    return rows


def upsert_stock_row(*, batch, unit, quantity_delta, price=None):
    """Adjust a single row without touching its siblings.

    Creating a missing row requires a price.
    """
    quantity_delta = round_quantity(quantity_delta)
    with transaction.atomic():
        row = Stock.objects.select_for_update(of=("self",)).filter(batch_id=batch.id, unit_id=unit.id).first()
        if row is None:
            if price is None:
                raise LedgerValidationError("A price is required to start tracking a unit.", unit_id=unit.id)
            if quantity_delta < 0:
                raise InsufficientStock(unit_id=unit.id, required=-quantity_delta, available=0)
            return Stock.objects.create(
                batch=batch,
                unit=unit,
                quantity=quantity_delta,
                price_per_quantity=round_money(price),
            )

        new_quantity = round_quantity(row.quantity + quantity_delta)
        if new_quantity < 0:
            raise InsufficientStock(unit_id=unit.id, required=-quantity_delta, available=row.quantity)
        row.quantity = new_quantity
        update_fields = ["quantity", "updated_at"]
        if price is not None:
            row.price_per_quantity = round_money(price)
            update_fields.append("price_per_quantity")
        row.save(update_fields=update_fields)
        return row


def track_unit(*, batch, unit, price, actor=None):
    """Start tracking ``unit`` in an existing batch, sized from the batch's main-unit row."""
    product = batch.product
    main_unit = main_unit_of(product)
    factor = conversion_map(product).get(unit.id)
    if factor is None:
        raise UnresolvedReference("The product has no conversion for this unit.", unit_id=unit.id)

    with transaction.atomic():
        rows = {row.unit_id: row for row in lock_stock_rows(batch_ids=[batch.id])}
        if unit.id in rows:
            raise LedgerValidationError("The batch already tracks this unit.", unit_id=unit.id)
        main_row = rows.get(main_unit.id)
        main_quantity = main_row.quantity if main_row else round_quantity(0)
        row = upsert_stock_row(
            batch=batch,
            unit=unit,
            quantity_delta=from_main_quantity(main_quantity, factor),
            price=price,
        )
        record_audit(
            actor=actor,
            action="inventory.batch.track_unit",
            entity_type="stock_batch",
            entity_id=batch.id,
            maintains=batch.maintains,
            payload={"unit_id": unit.id, "quantity": row.quantity, "price": row.price_per_quantity},
        )
    return row


def update_batch_prices(*, batch, unit_prices, actor=None):
    prices = _normalize_prices(unit_prices)
    if not prices:
        raise LedgerValidationError("At least one price is required.")

    with transaction.atomic():
        rows = {str(row.unit_id): row for row in lock_stock_rows(batch_ids=[batch.id])}
        unknown = [unit_id for unit_id in prices if unit_id not in rows]
        if unknown:
            raise UnresolvedReference("The batch does not track these units.", unit_ids=",".join(unknown))

        before = {}
        changed = []
        for unit_id, price in prices.items():
            row = rows[unit_id]
            if row.price_per_quantity != price:
                before[unit_id] = row.price_per_quantity
                row.price_per_quantity = price
                changed.append(row)
        if changed:
            now = timezone.now()
            for row in changed:
                row.updated_at = now
            Stock.objects.bulk_update(changed, ["price_per_quantity", "updated_at"])
            record_audit(
                actor=actor,
                action="inventory.batch.prices",
                entity_type="stock_batch",
                entity_id=batch.id,
                maintains=batch.maintains,
                payload={"before": before, "after": {str(row.unit_id): row.price_per_quantity for row in changed}},
            )
    return list_rows_for_batch(batch)


def last_known_prices(product, maintains):
    """Row prices of the newest batch at ``maintains``, retired batches included."""
    latest = StockBatch.objects.for_scope(product.id, maintains.id).order_by("-created_at", "-id").first()
    if latest is None:
        return {}
    return {row.unit_id: row.price_per_quantity for row in Stock.objects.filter(batch_id=latest.id)}


def add_stock_to_latest_batch(*, product, maintains, main_quantity, unit_prices=None, actor=None):
    """Receive ``main_quantity`` main units into the newest active batch, or open one."""
    main_unit = main_unit_of(product)
    main_quantity = round_quantity(main_quantity)
    if main_quantity <= 0:
        raise LedgerValidationError("Quantity must be greater than 0.", main_quantity=main_quantity)

    with transaction.atomic():
        latest = (
            StockBatch.objects.locked()
            .for_scope(product.id, maintains.id)
            .active()
            .order_by("-created_at", "-id")
            .first()
        )
        if latest is None:
            return create_batch(
                product=product,
                maintains=maintains,
                main_quantity=main_quantity,
                unit_prices=unit_prices or last_known_prices(product, maintains),
                actor=actor,
            )

        lock_stock_rows(batch_ids=[latest.id])
        apply_unit_delta(batch=latest, unit_id=main_unit.id, delta=main_quantity)
        if unit_prices:
            update_batch_prices(batch=latest, unit_prices=unit_prices, actor=actor)
        record_audit(
            actor=actor,
            action="inventory.batch.restock",
            entity_type="stock_batch",
            entity_id=latest.id,
            maintains=maintains,
            payload={"product_id": product.id, "main_quantity": main_quantity},
        )

    logger.info(f"Restocked batch {latest.id} with {main_quantity} main units")
    return latest


def restore_batch(batch):
    """Bring a soft-deleted batch back so stock can be returned to it."""
    if not batch.is_deleted:
        return batch
    batch.is_deleted = False
    batch.deleted_at = None
    batch.save(update_fields=["is_deleted", "deleted_at", "updated_at"])
    logger.info(f"Restored soft-deleted batch {batch.id}")
    return batch


def stock_summary(product, maintains=None):
    """Main-unit quantity held per active batch, oldest first."""
    main_unit = main_unit_of(product)
    batches = list_batches_for_product(product, maintains)
    quantities = dict(
        Stock.objects.filter(batch__in=batches, unit_id=main_unit.id).values_list("batch_id", "quantity")
    )
    return [(batch, to_decimal(quantities.get(batch.id))) for batch in batches]
