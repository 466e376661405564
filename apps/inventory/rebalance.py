"""Proportional cross-unit stock arithmetic.

Every row of a batch describes the same physical stock in a different unit. A
change expressed in one unit is translated to the main unit through the
current ratio between the two rows, then spread over every sibling row in
proportion to its share of the main-unit stock. Rows are priced
independently, so each one is adjusted rather than recomputed from a single
canonical quantity.

Nothing here touches the database.
"""

from dataclasses import dataclass, replace
from decimal import Decimal

from apps.common.decimals import ONE, ZERO, QUANTITY_TOLERANCE, round_quantity
from apps.common.exceptions import InsufficientStock, UnresolvedReference


@dataclass(frozen=True)
class RowState:
    unit_id: object
    quantity: Decimal
    # Main units per one of this unit; only used when a row has no stock to derive a ratio from.
    factor: Decimal = ONE


def _main_delta(target: RowState, main: RowState, delta: Decimal) -> Decimal:
    if target.unit_id == main.unit_id:
        return delta
    if target.quantity > 0 and main.quantity > 0:
        return delta * (main.quantity / target.quantity)
    return delta * target.factor


def _sibling_delta(row: RowState, main: RowState, delta_in_main: Decimal) -> Decimal:
    if row.quantity > 0 and main.quantity > 0:
        return delta_in_main / (main.quantity / row.quantity)
    if delta_in_main < 0:
        return ZERO
    return delta_in_main / row.factor


def rebalance(rows, unit_id, delta, *, main_unit_id):
    """Return the batch rows after adding ``delta`` (negative to remove) in ``unit_id``.

    Raises InsufficientStock when a removal exceeds the row it is expressed
    in, or when any row would end up negative after rounding.
    """
    rows = list(rows)
    by_unit = {row.unit_id: row for row in rows}
    delta = round_quantity(delta)

    target = by_unit.get(unit_id)
    if target is None:
        if delta < 0:
            raise InsufficientStock(
                "The batch holds no stock in the requested unit.",
                unit_id=unit_id,
                required=-delta,
                available=ZERO,
            )
        raise UnresolvedReference("The batch has no stock row for this unit.", unit_id=unit_id)

    main = by_unit.get(main_unit_id)
    if main is None:
        raise UnresolvedReference("The batch has no stock row in the main unit.", unit_id=main_unit_id)

    if delta == 0:
        return rows

    if delta < 0 and -delta > target.quantity:
        raise InsufficientStock(unit_id=unit_id, required=-delta, available=target.quantity)

    drained = delta < 0 and target.quantity + delta == 0
    delta_in_main = _main_delta(target, main, delta)

    updated = []
    for row in rows:
        if drained:
            new_quantity = ZERO
        elif row.unit_id == unit_id:
            new_quantity = row.quantity + delta
        elif row.unit_id == main_unit_id:
            new_quantity = row.quantity + delta_in_main
        else:
            new_quantity = row.quantity + _sibling_delta(row, main, delta_in_main)

        new_quantity = round_quantity(new_quantity)
        if new_quantity < 0:
            # Residue of repeated proportional division, not a real shortfall.
            if -new_quantity <= QUANTITY_TOLERANCE:
                new_quantity = round_quantity(ZERO)
            else:
                raise InsufficientStock(unit_id=row.unit_id, required=-delta, available=row.quantity)
        updated.append(replace(row, quantity=new_quantity))
    return updated
