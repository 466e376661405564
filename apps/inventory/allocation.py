"""Oldest-first batch allocation.

The ordering policy and the greedy draw are plain functions over candidate
snapshots so they can be tested without a database. ``allocate`` builds the
candidates from stock rows and never writes, so calling it repeatedly without
an intervening mutation returns the same plan.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from apps.common.decimals import ZERO, round_quantity
from apps.common.exceptions import InsufficientStock, UnresolvedReference
from apps.inventory.models import Stock, StockBatch


@dataclass(frozen=True)
class Candidate:
    batch_id: int
    created_at: datetime
    available: Decimal


@dataclass(frozen=True)
class Allocation:
    batch_id: int
    quantity: Decimal


def fifo_order(candidates):
    """Oldest batch first; equal timestamps fall back to insertion order (batch id)."""
    return sorted(candidates, key=lambda candidate: (candidate.created_at, candidate.batch_id))


def plan_fifo(candidates, required):
    required = round_quantity(required)
    remaining = required
    plan = []
    for candidate in fifo_order(candidates):
        if remaining <= 0:
            break
        available = round_quantity(candidate.available)
        if available <= 0:
            continue
        taken = min(available, remaining)
        plan.append(Allocation(batch_id=candidate.batch_id, quantity=taken))
        remaining = round_quantity(remaining - taken)

    if remaining > 0:
        total_available = sum((round_quantity(c.available) for c in candidates if c.available > 0), ZERO)
        raise InsufficientStock(required=required, available=total_available)
    return plan


def plan_pinned(candidate, required):
    required = round_quantity(required)
    if required <= 0:
        return []
    available = round_quantity(candidate.available) if candidate else ZERO
    if candidate is None or available < required:
        raise InsufficientStock(
            "The selected batch cannot cover the requested quantity.",
            batch_id=candidate.batch_id if candidate else None,
            required=required,
            available=available,
        )
    return [Allocation(batch_id=candidate.batch_id, quantity=required)]


def candidates_for(product_id, maintains_id, unit_id, batch_id=None):
    queryset = Stock.objects.filter(
        unit_id=unit_id,
        batch__product_id=product_id,
        batch__is_deleted=False,
    )
    if maintains_id is not None:
        queryset = queryset.filter(batch__maintains_id=maintains_id)
    if batch_id is not None:
        queryset = queryset.filter(batch_id=batch_id)
    return [
        Candidate(batch_id=row["batch_id"], created_at=row["batch__created_at"], available=row["quantity"])
        for row in queryset.values("batch_id", "batch__created_at", "quantity")
    ]


def allocate(product_id, maintains_id, unit_id, required, *, batch_id=None):
    """Plan how much of ``required`` (in ``unit_id``) to draw from each batch.

    With ``batch_id`` the plan is pinned to that batch and never spills over.
    """
    if batch_id is None:
        return plan_fifo(candidates_for(product_id, maintains_id, unit_id), required)

    candidates = candidates_for(product_id, maintains_id, unit_id, batch_id=batch_id)
    if not candidates:
        batch = StockBatch.objects.filter(pk=batch_id).only("product_id", "maintains_id").first()
        if batch is None or str(batch.product_id) != str(product_id):
            raise UnresolvedReference("Stock batch not found for this product.", batch_id=batch_id)
        if maintains_id is not None and str(batch.maintains_id) != str(maintains_id):
            raise UnresolvedReference("Stock batch belongs to another location.", batch_id=batch_id)
    return plan_pinned(candidates[0] if candidates else None, required)
