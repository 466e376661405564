"""Sale recording and payment cancellation.

A sale request moves through validating, allocating, mutating and recording
inside a single database transaction, and ends committed or aborted. Stock
rows touched by the request are locked up front in (batch, unit) order, so
two sales spanning the same batches always queue behind each other instead
of deadlocking. Cleanup of emptied batches is queued for after the commit
and can never undo or fail the sale.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.audit.services import record_audit
from apps.catalog.services import factor_or_identity, get_product, main_unit_of, resolve_unit, to_main_quantity
from apps.common.decimals import ZERO, money_matches, round_money, round_quantity
from apps.common.exceptions import LedgerError, LedgerValidationError, UnresolvedReference
from apps.common.transactions import run_with_conflict_retry
from apps.customers.models import Customer, CustomerCategory, CustomerDue
from apps.customers.services import reduce_due_total
from apps.inventory.allocation import allocate
from apps.inventory.cleanup import schedule_cleanup
from apps.inventory.models import Stock, StockBatch
from apps.inventory.services import apply_unit_delta, lock_stock_rows, restore_batch
from apps.maintains.models import Maintains
from apps.sales.models import (
    DiscountType,
    Payment,
    PaymentMethod,
    PaymentSale,
    PaymentStatus,
    Sale,
    SaleAllocation,
    SaleStatus,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class SaleStage(str, Enum):
    VALIDATING = "validating"
    ALLOCATING = "allocating"
    MUTATING = "mutating"
    RECORDING = "recording"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SaleLineInput:
    product_id: object
    quantity: Decimal
    price_per_quantity: Decimal
    unit_id: object = None
    unit_name: str = ""
    product_name: str = ""
    discount: Decimal = ZERO
    discount_type: str = DiscountType.FIXED
    discount_note: str = ""
    stock_batch_id: object = None
    stock_id: object = None


@dataclass(frozen=True)
class PaymentInput:
    method: str
    amount: Decimal


@dataclass
class SaleResult:
    payment: Payment
    sales: list = field(default_factory=list)


@dataclass
class _ResolvedLine:
    line: SaleLineInput
    product: object
    unit: object
    main_unit: object
    batch_id: object
    gross: Decimal
    discount_value: Decimal
    amount: Decimal


def _stage(stage, **context):
    details = " ".join(f"{key}={value}" for key, value in context.items())
    logger.debug(f"sale {stage.value} {details}".rstrip())


def line_amounts(quantity, price, discount=ZERO, discount_type=DiscountType.FIXED):
    """Return ``(gross, discount_value, amount)`` for one line."""
    gross = round_money(quantity * price)
    discount = discount or ZERO
    if discount_type == DiscountType.PERCENTAGE:
        discount_value = round_money(quantity * price * discount / HUNDRED)
    else:
        discount_value = round_money(discount)
    return gross, discount_value, round_money(gross - discount_value)


def build_payment_map(payments):
    totals = {}
    for entry in payments:
        method = str(entry.method)
        totals[method] = totals.get(method, ZERO) + round_money(entry.amount)
    return {method: str(round_money(amount)) for method, amount in totals.items()}


def validate_sale_request(lines, payments, *, customer_id=None, total_with_discount=None):
    """Check a request before any row is read or locked; returns the sale total."""
    if not lines:
        raise LedgerValidationError("At least one product is required.", field="products")
    if not payments:
        raise LedgerValidationError("At least one payment entry is required.", field="payment_info")

    total = ZERO
    for index, line in enumerate(lines):
        if line.quantity is None or round_quantity(line.quantity) <= 0:
            raise LedgerValidationError("Quantity must be greater than 0.", line=index, field="quantity")
        if line.price_per_quantity is None or line.price_per_quantity < 0:
            raise LedgerValidationError("Price cannot be negative.", line=index, field="price_per_quantity")
        if line.discount < 0:
            raise LedgerValidationError("Discount cannot be negative.", line=index, field="discount")
        if line.discount_type not in DiscountType.values:
            raise LedgerValidationError("Unknown discount type.", line=index, field="discount_type")
        if line.discount_type == DiscountType.PERCENTAGE and line.discount > HUNDRED:
            raise LedgerValidationError("Percentage discount cannot exceed 100.", line=index, field="discount")
        if not (line.unit_id or line.unit_name or line.stock_id):
            raise LedgerValidationError("Each product needs a unit.", line=index, field="unit")
        _, _, amount = line_amounts(line.quantity, line.price_per_quantity, line.discount, line.discount_type)
        if amount < 0:
            raise LedgerValidationError("Discount cannot exceed the line amount.", line=index, field="discount")
        total += amount
    total = round_money(total)

    paid = ZERO
    for entry in payments:
        if entry.method not in PaymentMethod.values:
            raise LedgerValidationError(f"Unknown payment method '{entry.method}'.", field="payment_info")
        if entry.amount is None or entry.amount < 0:
            raise LedgerValidationError("Payment amounts cannot be negative.", field="payment_info")
        paid += round_money(entry.amount)

    if total_with_discount is not None and not money_matches(total, total_with_discount):
        raise LedgerValidationError(
            "The discounted total does not match the products.",
            field="total_price_with_discount",
            expected=total,
            received=round_money(total_with_discount),
        )
    if not money_matches(paid, total):
        raise LedgerValidationError(
            "Payments must add up to the sale total.",
            field="payment_info",
            total=total,
            paid=round_money(paid),
        )

    due = sum((round_money(entry.amount) for entry in payments if entry.method == PaymentMethod.DUE), ZERO)
    if due > 0 and not customer_id:
        raise LedgerValidationError("A customer is required for due payments.", field="customer_id")
    return total


def _get_maintains(maintains_id):
    maintains = Maintains.objects.filter(pk=maintains_id).first()
    if maintains is None:
        raise UnresolvedReference("Location not found.", maintains_id=maintains_id)
    return maintains


def _resolve_line(line, maintains):
    product = get_product(line.product_id)
    main_unit = main_unit_of(product)

    batch_id = line.stock_batch_id
    stock_unit = None
    if line.stock_id:
        row = Stock.objects.select_related("batch", "unit").filter(pk=line.stock_id).first()
        if row is None or row.batch.product_id != product.id:
            raise UnresolvedReference("Stock row not found for this product.", stock_id=line.stock_id)
        if batch_id and str(batch_id) != str(row.batch_id):
            raise LedgerValidationError("stock_id and stock_batch_id point at different batches.", stock_id=line.stock_id)
        batch_id = row.batch_id
        stock_unit = row.unit

    if line.unit_id or line.unit_name:
        unit = resolve_unit(unit_id=line.unit_id, name=line.unit_name)
    else:
        unit = stock_unit
    if stock_unit is not None and stock_unit.id != unit.id:
        raise LedgerValidationError("The stock row is tracked in a different unit.", stock_id=line.stock_id)

    if batch_id is not None:
        batch = StockBatch.objects.filter(pk=batch_id).only("product_id", "maintains_id").first()
        if batch is None or batch.product_id != product.id:
            raise UnresolvedReference("Stock batch not found for this product.", batch_id=batch_id)
        if batch.maintains_id != maintains.id:
            raise UnresolvedReference("Stock batch belongs to another location.", batch_id=batch_id)
        batch_id = batch.id

    gross, discount_value, amount = line_amounts(
        line.quantity,
        line.price_per_quantity,
        line.discount,
        line.discount_type,
    )
    return _ResolvedLine(
        line=line,
        product=product,
        unit=unit,
        main_unit=main_unit,
        batch_id=batch_id,
        gross=gross,
        discount_value=discount_value,
        amount=amount,
    )


def _main_unit_price(batch_id, main_unit, quantity_in_main, amount):
    price = Stock.objects.filter(batch_id=batch_id, unit_id=main_unit.id).values_list("price_per_quantity", flat=True).first()
    if price is not None:
        return price
    if quantity_in_main:
        return round_money(amount / quantity_in_main)
    return None


def _record_sale(*, lines, payments, maintains_id, actor, customer_id, customer_category_id, total):
    with transaction.atomic():
        maintains = _get_maintains(maintains_id)
        customer = None
        if customer_id:
            customer = Customer.objects.select_related("category").filter(pk=customer_id).first()
            if customer is None:
                raise UnresolvedReference("Customer not found.", customer_id=customer_id)
        category = None
        if customer_category_id:
            category = CustomerCategory.objects.filter(pk=customer_category_id).first()
            if category is None:
                raise UnresolvedReference("Customer category not found.", customer_category_id=customer_category_id)
        elif customer is not None:
            category = customer.category

        resolved = [_resolve_line(line, maintains) for line in lines]

        _stage(SaleStage.ALLOCATING, lines=len(resolved))
        lock_stock_rows(
            batch_ids={item.batch_id for item in resolved if item.batch_id is not None},
            scopes={(item.product.id, maintains.id) for item in resolved if item.batch_id is None},
        )

        sales = []
        touched = set()
        for position, item in enumerate(resolved):
            plan = allocate(item.product.id, maintains.id, item.unit.id, item.line.quantity, batch_id=item.batch_id)
            if not plan:
                raise LedgerValidationError("Quantity must be greater than 0.", line=position, field="quantity")

            _stage(SaleStage.MUTATING, line=position, batches=[allocation.batch_id for allocation in plan])
            batches = StockBatch.objects.select_related("product__main_unit").in_bulk(
                [allocation.batch_id for allocation in plan]
            )
            for allocation in plan:
                apply_unit_delta(batch=batches[allocation.batch_id], unit_id=item.unit.id, delta=-allocation.quantity)
            touched.add((item.product.id, maintains.id))

            _stage(SaleStage.RECORDING, line=position)
            quantity = round_quantity(item.line.quantity)
            factor = factor_or_identity(item.product, item.unit.id)
            quantity_in_main = round_quantity(to_main_quantity(quantity, factor))
            first_batch_id = plan[0].batch_id
            sale = Sale.objects.create(
                product=item.product,
                product_name=item.line.product_name or item.product.name,
                batch_id=first_batch_id,
                unit=item.unit,
                unit_name=item.unit.name,
                sale_quantity=quantity,
                price_per_unit=round_money(item.line.price_per_quantity),
                discount_type=item.line.discount_type,
                discount_amount=item.discount_value,
                discount_note=item.line.discount_note,
                sale_amount=item.amount,
                quantity_in_main_unit=quantity_in_main,
                main_unit_price=_main_unit_price(first_batch_id, item.main_unit, quantity_in_main, item.amount),
                maintains=maintains,
                customer=customer,
                customer_category=category,
                created_by=actor,
            )
            SaleAllocation.objects.bulk_create(
                [
                    SaleAllocation(
                        sale=sale,
                        batch_id=allocation.batch_id,
                        unit=item.unit,
                        quantity=allocation.quantity,
                        position=index,
                    )
                    for index, allocation in enumerate(plan)
                ]
            )
            sales.append(sale)

        payment_map = build_payment_map(payments)
        due_amount = round_money(payment_map.get(PaymentMethod.DUE.value, ZERO))
        customer_due = None
        if due_amount > 0:
            customer_due = CustomerDue.objects.create(
                customer=customer,
                maintains=maintains,
                total_amount=due_amount,
                paid_amount=ZERO,
                created_by=actor,
            )

        payment = Payment.objects.create(
            maintains=maintains,
            payments=payment_map,
            total_amount=total,
            customer_due=customer_due,
            created_by=actor,
        )
        PaymentSale.objects.bulk_create([PaymentSale(payment=payment, sale=sale) for sale in sales])

        record_audit(
            actor=actor,
            action="sales.sale.create",
            entity_type="payment",
            entity_id=payment.id,
            maintains=maintains,
            payload={
                "sales": [sale.id for sale in sales],
                "total": total,
                "payments": payment_map,
                "customer_due_id": customer_due.id if customer_due else None,
            },
        )
        schedule_cleanup(touched)

    return SaleResult(payment=payment, sales=sales)


def create_sale(
    *,
    lines,
    payments,
    maintains_id,
    actor,
    customer_id=None,
    customer_category_id=None,
    total_with_discount=None,
):
    _stage(SaleStage.VALIDATING, lines=len(lines), payments=len(payments))
    total = validate_sale_request(
        lines,
        payments,
        customer_id=customer_id,
        total_with_discount=total_with_discount,
    )
    try:
        result = run_with_conflict_retry(
            lambda: _record_sale(
                lines=lines,
                payments=payments,
                maintains_id=maintains_id,
                actor=actor,
                customer_id=customer_id,
                customer_category_id=customer_category_id,
                total=total,
            ),
            label="create_sale",
        )
    except (LedgerError, DatabaseError) as exc:
        _stage(SaleStage.ABORTED, reason=type(exc).__name__)
        raise

    _stage(SaleStage.COMMITTED, payment=result.payment.id)
    logger.info(f"Recorded payment {result.payment.id} with {len(result.sales)} sales, total {total}")
    return result


def _allocations_to_restore(sales):
    allocations = list(
        SaleAllocation.objects.filter(sale__in=sales).order_by("batch_id", "unit_id", "id")
    )
    covered = {allocation.sale_id for allocation in allocations}
    for sale in sales:
        if sale.id in covered:
            continue
        if sale.batch_id and sale.unit_id:
            # Recorded before per-batch allocations were kept.
            allocations.append(
                SaleAllocation(sale=sale, batch_id=sale.batch_id, unit_id=sale.unit_id, quantity=sale.sale_quantity)
            )
        else:
            logger.warning(f"Sale {sale.id} has no batch, stock is not restored")
    allocations.sort(key=lambda allocation: (allocation.batch_id, str(allocation.unit_id)))
    return allocations


def _reverse_payment(*, payment_id, actor, reason):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(pk=payment_id).first()
        if payment is None:
            raise UnresolvedReference("Payment not found.", payment_id=payment_id)
        if payment.status == PaymentStatus.CANCELED:
            raise LedgerValidationError("Payment is already canceled.", code="invalid_state", payment_id=payment.id)

        sales = list(payment.sales.filter(status=SaleStatus.ACTIVE))
        allocations = _allocations_to_restore(sales)

        batch_ids = sorted({allocation.batch_id for allocation in allocations})
        batches = {
            batch.id: batch
            for batch in StockBatch.objects.locked()
            .select_related("product__main_unit")
            .filter(id__in=batch_ids)
            .order_by("id")
        }
        lock_stock_rows(batch_ids=batch_ids)
        for batch in batches.values():
            restore_batch(batch)

        for allocation in allocations:
            apply_unit_delta(batch=batches[allocation.batch_id], unit_id=allocation.unit_id, delta=allocation.quantity)

        now = timezone.now()
        Sale.objects.filter(id__in=[sale.id for sale in sales]).update(status=SaleStatus.CANCELED, canceled_at=now)

        due_amount = round_money(payment.amount_for(PaymentMethod.DUE.value))
        if payment.customer_due_id and due_amount > 0:
            reduce_due_total(
                due_id=payment.customer_due_id,
                amount=due_amount,
                actor=actor,
                note=f"Payment {payment.id} canceled",
            )

        payment.status = PaymentStatus.CANCELED
        payment.canceled_at = now
        payment.canceled_by = actor
        payment.cancel_reason = reason or ""
        payment.save(update_fields=["status", "canceled_at", "canceled_by", "cancel_reason"])

        record_audit(
            actor=actor,
            action="sales.payment.cancel",
            entity_type="payment",
            entity_id=payment.id,
            maintains=payment.maintains,
            payload={
                "sales": [sale.id for sale in sales],
                "restored": [
                    {"batch_id": allocation.batch_id, "unit_id": allocation.unit_id, "quantity": allocation.quantity}
                    for allocation in allocations
                ],
                "reason": reason or "",
            },
        )
    return payment


def cancel_payment(*, payment_id, actor, reason=""):
    """Cancel a payment, returning every unit it sold to the batches it came from."""
    payment = run_with_conflict_retry(
        lambda: _reverse_payment(payment_id=payment_id, actor=actor, reason=reason),
        label="cancel_payment",
    )
    logger.info(f"Canceled payment {payment.id}")
    return payment
