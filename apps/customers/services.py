import logging

from django.db import transaction

from apps.audit.services import record_audit
from apps.common.decimals import round_money
from apps.common.exceptions import LedgerValidationError, UnresolvedReference
from apps.customers.models import CustomerDue, CustomerDueUpdate

logger = logging.getLogger(__name__)


def _append_update(*, due, old_paid, actor, note=""):
    return CustomerDueUpdate.objects.create(
        due=due,
        total_amount=due.total_amount,
        paid_amount=due.paid_amount,
        collected_amount=round_money(due.paid_amount - old_paid),
        note=note,
        updated_by=actor,
    )


def _locked_due(due_id):
    due = CustomerDue.objects.select_for_update().filter(pk=due_id).first()
    if due is None:
        raise UnresolvedReference("Customer due not found.", due_id=due_id)
    return due


def collect_due(*, due_id, amount, actor, note=""):
    amount = round_money(amount)
    if amount <= 0:
        raise LedgerValidationError("Collected amount must be greater than 0.", amount=amount)

    with transaction.atomic():
        due = _locked_due(due_id)
        old_paid = due.paid_amount
        new_paid = round_money(old_paid + amount)
        if new_paid > due.total_amount:
            raise LedgerValidationError(
                "Collected amount exceeds the outstanding balance.",
                amount=amount,
                balance=due.balance,
            )
        due.paid_amount = new_paid
        due.save(update_fields=["paid_amount", "updated_at"])
        update = _append_update(due=due, old_paid=old_paid, actor=actor, note=note)
        record_audit(
            actor=actor,
            action="customers.due.collect",
            entity_type="customer_due",
            entity_id=due.id,
            maintains=due.maintains,
            payload={"collected": update.collected_amount, "paid_amount": due.paid_amount},
        )

    logger.info(f"Collected {amount} on due {due.id}, balance {due.balance}")
    return due


def reduce_due_total(*, due_id, amount, actor, note=""):
    """Shrink a due after the payment that created part of it was canceled.

    Must run inside the caller's transaction.
    """
    amount = round_money(amount)
    due = _locked_due(due_id)
    new_total = round_money(due.total_amount - amount)
    if new_total < due.paid_amount:
        raise LedgerValidationError(
            "The customer already paid more than the remaining due; refund the collection first.",
            code="due_already_collected",
            due_id=due.id,
            paid_amount=due.paid_amount,
        )
    due.total_amount = new_total
    due.save(update_fields=["total_amount", "updated_at"])
    _append_update(due=due, old_paid=due.paid_amount, actor=actor, note=note)
    return due
