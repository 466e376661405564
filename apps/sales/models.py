import uuid

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

from apps.common.decimals import to_decimal


class SaleStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    CANCELED = "CANCELED", "Canceled"


class DiscountType(models.TextChoices):
    FIXED = "Fixed", "Fixed"
    PERCENTAGE = "Percentage", "Percentage"


class PaymentMethod(models.TextChoices):
    BKASH = "bkash", "bKash"
    NOGOD = "nogod", "Nagad"
    CASH = "cash", "Cash"
    DUE = "due", "Due"
    CARD = "card", "Card"
    SEND_FOR_USE = "sendForUse", "Send for use"


class Sale(models.Model):
    """One sold line item. Only cancellation bookkeeping changes it after creation."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="sales")
    product_name = models.CharField(max_length=255)
    # Null for sales recorded before stock was tracked per batch.
    batch = models.ForeignKey(
        "inventory.StockBatch",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="sales",
    )
    unit = models.ForeignKey("catalog.Unit", null=True, blank=True, on_delete=models.PROTECT, related_name="sales")
    unit_name = models.CharField(max_length=64)
    sale_quantity = models.DecimalField(max_digits=14, decimal_places=3)
    price_per_unit = models.DecimalField(max_digits=12, decimal_places=2)
    discount_type = models.CharField(max_length=16, choices=DiscountType.choices, default=DiscountType.FIXED)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_note = models.CharField(max_length=255, blank=True)
    sale_amount = models.DecimalField(max_digits=12, decimal_places=2)
    quantity_in_main_unit = models.DecimalField(max_digits=14, decimal_places=3, null=True, blank=True)
    main_unit_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=16, choices=SaleStatus.choices, default=SaleStatus.ACTIVE)
    maintains = models.ForeignKey("maintains.Maintains", on_delete=models.PROTECT, related_name="sales")
    customer = models.ForeignKey(
        "customers.Customer",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="sales",
    )
    customer_category = models.ForeignKey(
        "customers.CustomerCategory",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="sales",
    )
    created_by = models.ForeignKey("accounts.User", on_delete=models.PROTECT, related_name="sales")
    created_at = models.DateTimeField(auto_now_add=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["maintains", "created_at"], name="sale_maintains_created_idx"),
            models.Index(fields=["product", "created_at"], name="sale_product_created_idx"),
            models.Index(fields=["status"], name="sale_status_idx"),
        ]


class SaleAllocation(models.Model):
    """Quantity one sale drew from one batch, in the unit it was sold in."""

    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="allocations")
    batch = models.ForeignKey("inventory.StockBatch", on_delete=models.PROTECT, related_name="allocations")
    unit = models.ForeignKey("catalog.Unit", on_delete=models.PROTECT, related_name="allocations")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["sale", "position"]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="allocation_quantity_gt_zero"),
        ]


class PaymentStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    CANCELED = "CANCELED", "Canceled"


class Payment(models.Model):
    maintains = models.ForeignKey("maintains.Maintains", on_delete=models.PROTECT, related_name="payments")
    payments = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    customer_due = models.ForeignKey(
        "customers.CustomerDue",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="payments",
    )
    sales = models.ManyToManyField(Sale, through="PaymentSale", related_name="payments")
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.ACTIVE)
    created_by = models.ForeignKey("accounts.User", on_delete=models.PROTECT, related_name="payments")
    created_at = models.DateTimeField(auto_now_add=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    canceled_by = models.ForeignKey(
        "accounts.User",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="canceled_payments",
    )
    cancel_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["maintains", "created_at"], name="payment_maintains_created_idx"),
            models.Index(fields=["status"], name="payment_status_idx"),
        ]

    def amount_for(self, method):
        return to_decimal(self.payments.get(method))


class PaymentSale(models.Model):
    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="sale_links")
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="payment_links")

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["payment", "sale"], name="unique_payment_sale"),
        ]
